"""
pixpipe Backend CLI

Utility commands around the pipeline runner:
- Config loading, saving and validation
- Master-file scanning and channel assignment
- Checkpoint listing and clearing
- Run log retrieval
- Bridge health (ping, stale command cleanup)

All commands print JSON on stdout.

Usage:
    python pixpipe_backend_cli.py <command> [args]
"""

import argparse
import json
import sys
from pathlib import Path

from orchestrator.bridge_client import DEFAULT_BRIDGE_DIR, BridgeClient, BridgeSettings
from orchestrator.checkpoints import CheckpointStore
from orchestrator.error_handling import log_exception
from pixpipe_backend.config_io import load_config_text, save_config_text
from pixpipe_backend.config_model import DEFAULT_CHECKPOINT_DIR
from pixpipe_backend.logs import get_run_logs
from pixpipe_backend.scan import scan_channels
from pixpipe_backend.schema import load_schema_json
from pixpipe_backend.validate import validate_config_yaml_text


def _print_json(obj: object) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _bridge_client(args: argparse.Namespace) -> BridgeClient:
    return BridgeClient(BridgeSettings(bridge_dir=Path(args.bridge_dir).expanduser()))


def cmd_get_schema(_: argparse.Namespace) -> int:
    schema = load_schema_json()
    _print_json(schema)
    return 0


def cmd_load_config(args: argparse.Namespace) -> int:
    yaml_text = load_config_text(args.path)
    _print_json({"path": args.path, "yaml": yaml_text})
    return 0


def cmd_save_config(args: argparse.Namespace) -> int:
    if args.stdin:
        yaml_text = sys.stdin.read()
    else:
        yaml_text = args.yaml

    if yaml_text is None:
        sys.stderr.write("save-config requires YAML text either as argument or via --stdin\n")
        return 2

    save_config_text(args.path, yaml_text)
    _print_json({"path": args.path, "saved": True})
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    if args.path is not None:
        yaml_text = load_config_text(args.path)
    elif args.stdin:
        yaml_text = sys.stdin.read()
    else:
        yaml_text = args.yaml

    result = validate_config_yaml_text(yaml_text=yaml_text, schema_path=args.schema)
    if args.path is not None:
        result["path"] = args.path
    _print_json(result)
    if args.strict_exit_codes:
        return 0 if result.get("valid") else 1
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    result = scan_channels(args.folder)
    _print_json(result)
    if args.strict_exit_codes:
        return 0 if result.get("ok") else 1
    return 0


def cmd_list_checkpoints(args: argparse.Namespace) -> int:
    store = CheckpointStore(args.checkpoint_dir, session=None)
    _print_json({"directory": str(store.directory), "checkpoints": store.list_checkpoints()})
    return 0


@log_exception
def cmd_clear_checkpoints(args: argparse.Namespace) -> int:
    store = CheckpointStore(args.checkpoint_dir, session=None, image_extension=args.image_extension)
    removed = store.clear()
    _print_json({"directory": str(store.directory), "removed": removed})
    return 0


def cmd_get_run_logs(args: argparse.Namespace) -> int:
    res = get_run_logs(args.run_dir, tail=args.tail)
    _print_json(res)
    return 0


def cmd_ping(args: argparse.Namespace) -> int:
    client = _bridge_client(args)
    alive = client.is_watcher_alive(attempts=args.attempts)
    _print_json({"bridge_dir": str(client.settings.bridge_dir), "alive": alive})
    return 0 if alive else 1


@log_exception
def cmd_clean_stale_commands(args: argparse.Namespace) -> int:
    client = _bridge_client(args)
    removed = client.clean_stale_commands(max_age_seconds=args.max_age)
    _print_json({"bridge_dir": str(client.settings.bridge_dir), "removed": removed})
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pixpipe_backend_cli")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_schema = sub.add_parser("get-schema")
    p_schema.set_defaults(func=cmd_get_schema)

    p_load = sub.add_parser("load-config")
    p_load.add_argument("path")
    p_load.set_defaults(func=cmd_load_config)

    p_save = sub.add_parser("save-config")
    p_save.add_argument("path")
    p_save.add_argument("yaml", nargs="?")
    p_save.add_argument("--stdin", action="store_true")
    p_save.set_defaults(func=cmd_save_config)

    p_validate = sub.add_parser("validate-config")
    src = p_validate.add_mutually_exclusive_group(required=True)
    src.add_argument("--path")
    src.add_argument("--yaml")
    src.add_argument("--stdin", action="store_true")
    p_validate.add_argument(
        "--schema",
        default=None,
        help="Optional path to a schema file (defaults to the bundled pixpipe.schema.json)",
    )
    p_validate.add_argument(
        "--strict-exit-codes",
        action="store_true",
        help="Return exit code 1 when validation fails (CLI mode). Default: always 0 and rely on JSON result.",
    )
    p_validate.set_defaults(func=cmd_validate_config)

    p_scan = sub.add_parser("scan")
    p_scan.add_argument("folder", help="Folder holding the per-channel master files")
    p_scan.add_argument(
        "--strict-exit-codes",
        action="store_true",
        help="Return exit code 1 when scan ok=false (CLI mode). Default: always 0 and rely on JSON result.",
    )
    p_scan.set_defaults(func=cmd_scan)

    p_list_cp = sub.add_parser("list-checkpoints")
    p_list_cp.add_argument("--checkpoint-dir", default=str(DEFAULT_CHECKPOINT_DIR))
    p_list_cp.set_defaults(func=cmd_list_checkpoints)

    p_clear_cp = sub.add_parser("clear-checkpoints")
    p_clear_cp.add_argument("--checkpoint-dir", default=str(DEFAULT_CHECKPOINT_DIR))
    p_clear_cp.add_argument("--image-extension", default=".xisf")
    p_clear_cp.set_defaults(func=cmd_clear_checkpoints)

    p_logs = sub.add_parser("get-run-logs")
    p_logs.add_argument("run_dir")
    p_logs.add_argument("--tail", type=int, default=None)
    p_logs.set_defaults(func=cmd_get_run_logs)

    p_ping = sub.add_parser("ping")
    p_ping.add_argument("--bridge-dir", default=str(DEFAULT_BRIDGE_DIR))
    p_ping.add_argument("--attempts", type=int, default=25, help="Polls before giving up (0.2 s each)")
    p_ping.set_defaults(func=cmd_ping)

    p_clean = sub.add_parser("clean-stale-commands")
    p_clean.add_argument("--bridge-dir", default=str(DEFAULT_BRIDGE_DIR))
    p_clean.add_argument("--max-age", type=float, default=600.0, help="Seconds after which an unanswered command is stale")
    p_clean.set_defaults(func=cmd_clean_stale_commands)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
