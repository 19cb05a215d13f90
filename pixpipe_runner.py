"""
pixpipe runner

Runs a pipeline configuration against the image engine behind the bridge.
Each invocation gets its own run directory:

    <runs_dir>/<YYYYmmdd_HHMMSS>_<uuid>/
        config.yaml
        config_hash.txt
        run_metadata.json
        logs/run_events.jsonl
        logs/pixpipe_<ts>.log

Exit codes: 0 completed, 1 failed, 2 aborted under memory pressure
(resume with --restart-from <resume_step>).

Usage:
    python pixpipe_runner.py run --config pipeline.yaml [--restart-from STEP]
"""

import argparse
import hashlib
import logging
import shutil
import signal
import sys
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from orchestrator import events
from orchestrator.bridge_client import BridgeClient, BridgeSettings
from orchestrator.checkpoints import DEFAULT_CHECKPOINT_STEPS, CheckpointStore
from orchestrator.engine import ExecutionEngine, TerminalStatus
from orchestrator.engine_api import EngineSession
from orchestrator.gradient_selector import GradientSelector
from orchestrator.logging_config import setup_logging
from orchestrator.resource_monitor import ResourceMonitor
from pixpipe_backend.validate import InvalidConfigError, load_pipeline_config

_STOP = False

logger = logging.getLogger("pixpipe_runner")


def _handle_signal(_signum, _frame):
    global _STOP
    _STOP = True


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _copy_config(config_path: Path, out_path: Path):
    out_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(config_path, out_path)


def _make_client(settings: BridgeSettings):
    return BridgeClient(settings)


def _apply_overrides(config, args):
    rt = config.runtime
    if args.bridge_dir:
        rt = replace(rt, bridge_dir=str(Path(args.bridge_dir).expanduser()))
    if args.checkpoint_dir:
        rt = replace(rt, checkpoint_dir=str(Path(args.checkpoint_dir).expanduser()))
    return replace(config, runtime=rt)


def cmd_run(args) -> int:
    config_path = Path(args.config).expanduser().resolve()
    runs_dir = Path(args.runs_dir).expanduser().resolve()

    if not config_path.exists() or not config_path.is_file():
        sys.stderr.write(f"config not found: {config_path}\n")
        return 1

    run_id = str(uuid.uuid4())
    ts_compact = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    run_dir = runs_dir / f"{ts_compact}_{run_id}"

    run_dir.mkdir(parents=True, exist_ok=False)
    (run_dir / "logs").mkdir(parents=True, exist_ok=True)

    log_dir = Path(args.log_dir).expanduser() if args.log_dir else run_dir / "logs"
    setup_logging(log_level=getattr(logging, args.log_level.upper()), log_dir=str(log_dir))

    config_bytes = config_path.read_bytes()
    config_hash = _sha256_bytes(config_bytes)
    _copy_config(config_path, run_dir / "config.yaml")
    (run_dir / "config_hash.txt").write_text(config_hash + "\n", encoding="utf-8")

    log_path = run_dir / "logs" / "run_events.jsonl"
    with log_path.open("w", encoding="utf-8") as log_fp:
        try:
            config = _apply_overrides(load_pipeline_config(config_path), args)
        except InvalidConfigError as e:
            logger.error(str(e))
            for issue in e.issues:
                logger.error(f"  {issue['path']}: [{issue['code']}] {issue['message']}")
            events.run_event("runner_error", run_id, log_fp, {"error": str(e), "issues": e.issues})
            return TerminalStatus.FAILED.exit_code

        rt = config.runtime
        run_metadata = {
            "run_id": run_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "pipeline": config.name,
            "config_path": str(config_path),
            "config_hash": config_hash,
            "restart_from": args.restart_from,
            "bridge_dir": rt.bridge_dir,
            "checkpoint_dir": rt.checkpoint_dir,
        }
        (run_dir / "run_metadata.json").write_bytes(events.json_dumps_canonical(run_metadata))

        settings = BridgeSettings(
            bridge_dir=Path(rt.bridge_dir),
            poll_interval=rt.poll_interval,
            short_attempts=rt.short_timeout_attempts,
            long_attempts=rt.long_timeout_attempts,
        )
        client = _make_client(settings)
        if not args.skip_ping and not client.is_watcher_alive():
            msg = f"no watcher answering in {settings.bridge_dir}; is the engine running with the bridge script loaded?"
            logger.error(msg)
            events.run_event("runner_error", run_id, log_fp, {"error": msg})
            return TerminalStatus.FAILED.exit_code

        session = EngineSession(client)
        checkpoints = CheckpointStore(
            rt.checkpoint_dir,
            session,
            image_extension=args.image_extension,
            default_steps=rt.checkpoint_steps if rt.checkpoint_steps is not None else DEFAULT_CHECKPOINT_STEPS,
        )

        holder = {}
        monitor = ResourceMonitor(
            session,
            checkpoints,
            lambda: holder["engine"].state.registry,
            warn_gb=rt.memory_warn_gb,
            abort_gb=rt.memory_abort_gb,
            process_name=rt.engine_process_name,
        )
        selector = GradientSelector(session, lambda: holder["engine"].state.registry)
        engine = ExecutionEngine(
            session,
            checkpoints,
            monitor=monitor,
            selector=selector,
            run_id=run_id,
            log_fp=log_fp,
            stop_requested=lambda: _STOP,
            output_extension=args.image_extension,
        )
        holder["engine"] = engine

        logger.info(f"run {run_id}: pipeline {config.name} ({len(config.steps)} steps), run dir {run_dir}")
        status = engine.run(config, restart_from=args.restart_from)

    if status is TerminalStatus.ABORTED_RESUMABLE:
        sys.stderr.write(f"aborted under memory pressure; resume with --restart-from {engine.state.current_step}\n")
    elif status is TerminalStatus.FAILED and _STOP:
        sys.stderr.write("stopped on request\n")
    return status.exit_code


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pixpipe_runner")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run")
    p_run.add_argument("--config", required=True)
    p_run.add_argument("--restart-from", default=None, help="Step id to resume from (needs its checkpoint)")
    p_run.add_argument("--runs-dir", default="runs")
    p_run.add_argument("--bridge-dir", default=None, help="Overrides runtime.bridgeDir")
    p_run.add_argument("--checkpoint-dir", default=None, help="Overrides runtime.checkpointDir")
    p_run.add_argument("--log-dir", default=None, help="Human-readable log directory (defaults to <run_dir>/logs)")
    p_run.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    p_run.add_argument("--image-extension", default=".xisf", help="File format for checkpoints and the final image")
    p_run.add_argument("--skip-ping", action="store_true", help="Do not ping the watcher before starting")
    p_run.set_defaults(func=cmd_run)

    return p


def main(argv=None) -> int:
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    parser = build_arg_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
