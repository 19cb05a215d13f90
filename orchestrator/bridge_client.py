"""
File-based request/response channel to the image engine.

A command is written as <bridge_dir>/commands/<id>.json; the engine-side
watcher answers with <bridge_dir>/results/<id>.json. One command is in flight
at a time and every call has a bounded polling budget.
"""

import enum
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from .error_handling import BridgeCommandError, BridgeTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_DIR = Path.home() / ".pixinsight-mcp" / "bridge"


class CallClass(enum.Enum):
    SHORT = "short"
    LONG = "long"


@dataclass
class BridgeSettings:
    bridge_dir: Path = DEFAULT_BRIDGE_DIR
    poll_interval: float = 0.2
    short_attempts: int = 1500      # 5 min at 0.2 s
    long_attempts: int = 18000      # 1 h at 0.2 s

    def attempts_for(self, call_class: CallClass) -> int:
        return self.long_attempts if call_class is CallClass.LONG else self.short_attempts

    @property
    def commands_dir(self) -> Path:
        return Path(self.bridge_dir) / "commands"

    @property
    def results_dir(self) -> Path:
        return Path(self.bridge_dir) / "results"


@dataclass
class BridgeResult:
    id: str
    status: str
    timestamp: str = ""
    process: str = ""
    duration_ms: float = 0.0
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    message: str = ""
    tool: str = ""

    @classmethod
    def from_dict(cls, data: dict, tool: str = "") -> "BridgeResult":
        outputs = data.get("outputs")
        error = data.get("error")
        return cls(
            id=str(data.get("id", "")),
            status=str(data.get("status", "")),
            timestamp=str(data.get("timestamp", "")),
            process=str(data.get("process", "") or ""),
            duration_ms=float(data.get("duration_ms", 0.0) or 0.0),
            outputs=outputs if isinstance(outputs, dict) else {},
            error=error if isinstance(error, dict) else None,
            message=str(data.get("message", "") or ""),
            tool=tool,
        )

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def raise_for_status(self) -> "BridgeResult":
        if self.status == "error":
            err = self.error or {}
            raise BridgeCommandError(
                str(err.get("message") or self.message or "unknown engine error"),
                error_type=str(err.get("type") or "Error"),
                tool=self.tool,
            )
        return self


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json_atomic(path: Path, obj: dict) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
    os.replace(tmp, path)


class BridgeClient:
    """Blocking request/response over the bridge directory."""

    def __init__(self, settings: Optional[BridgeSettings] = None, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings or BridgeSettings()
        self._sleep = sleep

    def ensure_directories(self) -> None:
        self.settings.commands_dir.mkdir(parents=True, exist_ok=True)
        self.settings.results_dir.mkdir(parents=True, exist_ok=True)

    def send(
        self,
        tool: str,
        process: str = "",
        parameters: Optional[dict[str, Any]] = None,
        execute_method: str = "executeGlobal",
        target_view: Optional[str] = None,
        call_class: CallClass = CallClass.SHORT,
        max_attempts: Optional[int] = None,
    ) -> BridgeResult:
        """
        Write one command and block until its terminal result arrives.

        Raises BridgeTimeoutError when the polling budget runs out. The
        caller decides what an error status means (see raise_for_status).
        """
        self.ensure_directories()
        command_id = str(uuid.uuid4())
        command = {
            "id": command_id,
            "timestamp": _now_iso(),
            "tool": tool,
            "process": process or tool,
            "parameters": parameters or {},
            "executeMethod": execute_method,
            "targetView": target_view,
        }
        _write_json_atomic(self.settings.commands_dir / f"{command_id}.json", command)
        logger.debug(f"bridge -> {tool} id={command_id} target={target_view}")

        attempts = max_attempts if max_attempts is not None else self.settings.attempts_for(call_class)
        result_path = self.settings.results_dir / f"{command_id}.json"
        t0 = time.monotonic()
        for _ in range(attempts):
            result = self._read_result(result_path, tool)
            if result is not None and result.status != "running":
                try:
                    result_path.unlink()
                except FileNotFoundError:
                    pass
                logger.debug(
                    f"bridge <- {tool} id={command_id} status={result.status} "
                    f"engine_ms={result.duration_ms:.0f} wall_s={time.monotonic() - t0:.2f}"
                )
                return result
            self._sleep(self.settings.poll_interval)

        raise BridgeTimeoutError(command_id, tool, attempts * self.settings.poll_interval)

    @staticmethod
    def _read_result(path: Path, tool: str) -> Optional[BridgeResult]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            # partially written, retry on next poll
            return None
        if not isinstance(data, dict):
            return None
        return BridgeResult.from_dict(data, tool=tool)

    def is_watcher_alive(self, attempts: int = 25) -> bool:
        """Ping the watcher with a cheap listing call."""
        try:
            result = self.send("list_open_images", max_attempts=attempts)
        except BridgeTimeoutError:
            return False
        return result.ok

    def clean_stale_commands(self, max_age_seconds: float = 600.0, now: Optional[float] = None) -> int:
        """Remove unanswered command files older than max_age_seconds or unreadable."""
        cdir = self.settings.commands_dir
        if not cdir.is_dir():
            return 0
        now = time.time() if now is None else now
        removed = 0
        for p in sorted(cdir.glob("*.json")):
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
                ts = datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00")).timestamp()
                stale = (now - ts) > max_age_seconds
            except (OSError, ValueError, KeyError, TypeError):
                stale = True
            if stale:
                try:
                    p.unlink()
                    removed += 1
                except FileNotFoundError:
                    pass
        if removed:
            logger.info(f"removed {removed} stale bridge command(s) from {cdir}")
        return removed
