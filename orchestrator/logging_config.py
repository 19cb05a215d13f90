"""
Central logging setup for pixpipe.

Console output plus a rotating log file per run.
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler


def setup_logging(
    log_level=logging.INFO,
    log_dir='logs',
    log_prefix='pixpipe',
    console=True,
):
    """
    Configure the root logger.

    Args:
        log_level: logging level (default: INFO)
        log_dir: directory for log files
        log_prefix: prefix for log file names
        console: also log to stderr

    Returns:
        the root logger
    """
    os.makedirs(log_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"{log_prefix}_{timestamp}.log")

    logger = logging.getLogger()
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(file_handler)

    # stdout carries the JSON event stream, human logs go to stderr
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logging.getLogger('astropy').setLevel(logging.WARNING)

    return logger
