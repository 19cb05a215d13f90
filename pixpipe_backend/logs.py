from __future__ import annotations

from collections import deque
import json
from pathlib import Path
from typing import Any


def get_run_logs(run_dir: str, tail: int | None = None) -> dict[str, Any]:
    p = Path(run_dir).expanduser().resolve()
    log_path = p / "logs" / "run_events.jsonl"
    if not log_path.exists():
        return {"run_dir": str(p), "events": []}

    # With a tail, early step_end events would drop out; keep the latest
    # step_end per step id and append the ones missing from the tail.
    tail_n = int(tail) if tail is not None and tail > 0 else None
    tail_lines: deque[str] | list[str]
    if tail_n is not None:
        tail_lines = deque(maxlen=tail_n)
    else:
        tail_lines = []

    step_end_by_id: dict[str, dict[str, Any]] = {}

    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            s = line.strip()
            if not s:
                continue
            tail_lines.append(s)

            if '"type":"step_end"' in s:
                ev = _parse(s)
                if ev is not None:
                    step_id = ev.get("step_id")
                    if isinstance(step_id, str) and step_id:
                        step_end_by_id[step_id] = ev

    events = [ev for ev in (_parse(s) for s in tail_lines) if ev is not None]

    if tail_n is not None and step_end_by_id:
        in_tail = {ev.get("step_id") for ev in events if ev.get("type") == "step_end"}
        for step_id, ev in step_end_by_id.items():
            if step_id not in in_tail:
                events.append(ev)

    return {"run_dir": str(p), "events": events}


def _parse(line: str) -> dict[str, Any] | None:
    try:
        ev = json.loads(line)
    except ValueError:
        return None
    return ev if isinstance(ev, dict) else None
