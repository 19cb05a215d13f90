"""
Error types for the pixpipe orchestrator.

Two families matter to the execution engine: fatal errors stop the run
immediately, everything else raised inside a step handler is logged as a
warning and the step becomes a no-op.
"""

import functools
import logging
import traceback
from typing import Any, Callable, Optional


class PipelineError(Exception):
    """Base class for orchestrator errors"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
        self.log_error()

    def log_error(self):
        logger = logging.getLogger('PipelineError')
        logger.debug(f"{type(self).__name__}: {self}")
        if self.original_error:
            logger.debug(f"Original Error: {self.original_error!r}")


class BridgeError(PipelineError):
    """Problem talking to the engine through the bridge"""
    pass


class BridgeTimeoutError(BridgeError):
    """No terminal result arrived within the polling budget"""
    def __init__(self, command_id: str, tool: str, timeout_s: float):
        super().__init__(f"bridge timeout after {timeout_s:.1f}s: tool={tool} id={command_id}")
        self.command_id = command_id
        self.tool = tool
        self.timeout_s = timeout_s


class BridgeCommandError(BridgeError):
    """The engine reported status=error for a command"""
    def __init__(self, message: str, error_type: str = "Error", tool: str = ""):
        super().__init__(f"{tool}: {message}" if tool else message)
        self.error_type = error_type
        self.tool = tool


class SetupError(PipelineError):
    """Unresolvable inputs or ambiguous image identification"""
    pass


class ConfigurationError(PipelineError):
    """Invalid pipeline configuration"""
    def __init__(self, message: str, issues: Optional[list] = None):
        super().__init__(message)
        self.issues = list(issues or [])


class CheckpointNotFoundError(PipelineError):
    """No manifest on disk for the requested step id"""
    def __init__(self, step_id: str, path: Any = None):
        super().__init__(f"no checkpoint for step {step_id!r}" + (f" at {path}" if path else ""))
        self.step_id = step_id
        self.path = path


class UnknownBranchError(PipelineError):
    """A branch was addressed that has no live handle"""
    def __init__(self, branch_id: str):
        super().__init__(f"branch {branch_id!r} has no live image")
        self.branch_id = branch_id


class StepError(PipelineError):
    """A step handler could not complete"""
    pass


class MemoryPressureAbort(PipelineError):
    """Engine memory crossed the abort threshold; a checkpoint was written"""
    def __init__(self, step_id: str, memory_gb: float):
        super().__init__(
            f"engine memory {memory_gb:.1f} GB at step {step_id!r}; "
            f"checkpoint saved, resume with --restart-from {step_id}"
        )
        self.step_id = step_id
        self.memory_gb = memory_gb


FATAL_ERRORS = (SetupError, ConfigurationError, CheckpointNotFoundError)


def log_exception(func: Callable) -> Callable:
    """
    Decorator for CLI commands: log unexpected exceptions with traceback
    and re-raise them.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PipelineError:
            raise
        except Exception as e:
            logger = logging.getLogger(func.__module__)
            logger.error(f"Unexpected error in {func.__name__}: {e}")
            logger.error(traceback.format_exc())
            raise
    return wrapper
