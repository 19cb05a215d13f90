"""
Event emission for the pixpipe runner.

Every event is one canonical JSON line on stdout and in
<run_dir>/logs/run_events.jsonl.
"""

import json
import sys
from datetime import datetime, timezone
from typing import Any


def json_dumps_canonical(obj) -> bytes:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def emit(event: dict, log_fp=None, stdout: bool = True) -> None:
    """Emit event as JSON line to stdout and optional log file."""
    line = json_dumps_canonical(event).decode("utf-8")
    if stdout:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
    if log_fp is not None:
        log_fp.write(line + "\n")
        log_fp.flush()


def run_event(kind: str, run_id: str, log_fp=None, extra: dict[str, Any] | None = None, stdout: bool = True) -> None:
    ev: dict[str, Any] = {"type": kind, "run_id": run_id, "ts": now_iso()}
    if extra:
        ev.update(extra)
    emit(ev, log_fp, stdout)


def step_start(run_id: str, log_fp, index: int, step_id: str, extra: dict[str, Any] | None = None, stdout: bool = True) -> None:
    """Emit step_start event."""
    ev: dict[str, Any] = {
        "type": "step_start",
        "run_id": run_id,
        "step": index,
        "step_id": step_id,
        "ts": now_iso(),
    }
    if extra:
        ev.update(extra)
    emit(ev, log_fp, stdout)


def step_end(
    run_id: str,
    log_fp,
    index: int,
    step_id: str,
    status: str,
    extra: dict[str, Any] | None = None,
    stdout: bool = True,
) -> None:
    """Emit step_end event. status is one of ok, skipped, disabled, error."""
    ev: dict[str, Any] = {
        "type": "step_end",
        "run_id": run_id,
        "step": index,
        "step_id": step_id,
        "ts": now_iso(),
        "status": status,
    }
    if extra:
        ev.update(extra)
    emit(ev, log_fp, stdout)
