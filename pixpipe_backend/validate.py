from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from pixpipe_backend.config_model import PipelineConfig, config_from_dict
from pixpipe_backend.schema import load_schema_json
from pixpipe_backend.step_params import MERGE_KINDS, SINGLE_MERGE_KINDS, parse_params


@dataclass
class ValidationIssue:
    severity: str  # "error" | "warning"
    code: str
    path: str
    message: str


class InvalidConfigError(ValueError):
    """Configuration rejected at load time. `issues` holds the error list."""

    def __init__(self, message: str, issues: list[dict] | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


def _json_path(parts: list[str | int]) -> str:
    if not parts:
        return "$"
    out = "$"
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        else:
            if p.isidentifier():
                out += f".{p}"
            else:
                out += f"['{p}']"
    return out


def _report(issues: list[ValidationIssue]) -> dict:
    errors = [i.__dict__ for i in issues if i.severity == "error"]
    return {
        "valid": not errors,
        "errors": errors,
        "warnings": [i.__dict__ for i in issues if i.severity == "warning"],
    }


def _cross_field_issues(cfg: dict[str, Any]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    def err(code: str, path: str, message: str) -> None:
        issues.append(ValidationIssue("error", code, path, message))

    def warn(code: str, path: str, message: str) -> None:
        issues.append(ValidationIssue("warning", code, path, message))

    branches = cfg.get("branches") or {"main": {}}
    steps = cfg.get("steps") or []
    files = cfg.get("files") or {}

    index_by_id: dict[str, int] = {}
    for i, s in enumerate(steps):
        sid = s.get("id")
        if sid in index_by_id:
            err("duplicate_step_id", f"$.steps[{i}].id", f"step id {sid!r} is used more than once")
        else:
            index_by_id[sid] = i

    for bid, b in branches.items():
        fork_after = (b or {}).get("forkAfterStepId")
        if fork_after is not None and fork_after not in index_by_id:
            err("unknown_fork_step", _json_path(["branches", bid, "forkAfterStepId"]),
                f"branch {bid!r} forks after unknown step {fork_after!r}")

    for i, s in enumerate(steps):
        path = f"$.steps[{i}]"
        sid = s.get("id")
        branch = s.get("branchId", "main")
        kind = s.get("kind") or sid
        merges = s.get("merges") or []

        if branch not in branches:
            err("unknown_branch", f"{path}.branchId", f"step {sid!r} targets undeclared branch {branch!r}")

        try:
            typed = parse_params(kind, s.get("params"))
        except ValueError as e:
            err("invalid_params", f"{path}.params", f"step {sid!r}: {e}")
            typed = None

        for m in merges:
            if m not in branches:
                err("unknown_merge_branch", f"{path}.merges", f"step {sid!r} merges undeclared branch {m!r}")
            elif m == branch:
                err("self_merge", f"{path}.merges", f"step {sid!r} cannot merge its own branch {m!r}")
            else:
                fork_after = (branches.get(m) or {}).get("forkAfterStepId")
                if fork_after in index_by_id and index_by_id[fork_after] >= i:
                    err("merge_before_fork", f"{path}.merges",
                        f"step {sid!r} merges {m!r} before it forks (after {fork_after!r})")

        if kind in MERGE_KINDS and not merges:
            err("merge_source_missing", f"{path}.merges", f"step {sid!r} ({kind}) needs a branch in 'merges'")
        if kind in SINGLE_MERGE_KINDS and len(merges) > 1:
            err("too_many_merges", f"{path}.merges", f"step {sid!r} ({kind}) folds in exactly one branch, got {merges}")
        if merges and kind not in MERGE_KINDS and kind != "pixel_math":
            err("merge_not_supported", f"{path}.merges", f"step kind {kind!r} cannot merge branches")
        if merges and s.get("enabled") is False:
            warn("disabled_merge", path, f"step {sid!r} is disabled; {merges} stay live")

        if typed is None:
            continue
        if kind == "combine":
            for ch in typed.channels:
                if ch not in files:
                    err("missing_channel_file", f"{path}.params.channels", f"no file configured for channel {ch!r}")
        if kind == "open" and typed.channel not in files:
            err("missing_channel_file", f"{path}.params.channel", f"no file configured for channel {typed.channel!r}")
        target = None
        if kind == "clone":
            target = typed.into
        elif kind == "star_split":
            target = typed.stars_branch
        if target is not None:
            if target not in branches:
                err("unknown_fork_branch", f"{path}.params", f"step {sid!r} forks into undeclared branch {target!r}")
            elif target == branch:
                err("self_fork", f"{path}.params", f"step {sid!r} forks into its own branch")

    runtime = cfg.get("runtime") or {}
    warn_gb = runtime.get("memoryWarnGb")
    abort_gb = runtime.get("memoryAbortGb")
    if isinstance(warn_gb, (int, float)) and isinstance(abort_gb, (int, float)) and warn_gb >= abort_gb:
        err("memory_thresholds_invalid", "$.runtime", "runtime.memoryWarnGb must be < runtime.memoryAbortGb")
    for sid in runtime.get("checkpointSteps") or []:
        if sid not in index_by_id:
            warn("unknown_checkpoint_step", "$.runtime.checkpointSteps", f"checkpoint step {sid!r} is not in the step list")

    if "outputDir" not in files:
        warn("output_dir_default", "$.files", "files.outputDir not set; result is saved to the working directory")

    return issues


def validate_config_data(cfg: Any, schema_path: str | None = None) -> dict:
    issues: list[ValidationIssue] = []
    if not isinstance(cfg, dict):
        issues.append(ValidationIssue("error", "config_not_object", "$", "configuration root must be a mapping/object"))
        return _report(issues)

    validator = Draft202012Validator(load_schema_json(schema_path))
    for e in sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path]):
        issues.append(ValidationIssue("error", "schema_validation_error", _json_path(list(e.path)), e.message))

    # cross-field checks assume the shape is right
    if not issues:
        issues.extend(_cross_field_issues(cfg))
    return _report(issues)


def validate_config_yaml_text(yaml_text: str, schema_path: str | None = None) -> dict:
    try:
        cfg = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        return _report([ValidationIssue("error", "yaml_parse_error", "$", str(e))])
    return validate_config_data(cfg, schema_path)


def load_pipeline_config(path: str | Path, schema_path: str | None = None) -> PipelineConfig:
    """Read, validate and build the typed config. Raises InvalidConfigError."""
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidConfigError(f"cannot read config {p}: {e}") from e
    try:
        cfg = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"config {p} is not valid YAML: {e}") from e

    report = validate_config_data(cfg, schema_path)
    if not report["valid"]:
        first = report["errors"][0]
        raise InvalidConfigError(
            f"config {p} invalid ({len(report['errors'])} error(s)); first: {first['path']}: {first['message']}",
            report["errors"],
        )
    return config_from_dict(cfg)
