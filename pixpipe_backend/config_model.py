"""
Pipeline configuration model.

Read once at start and immutable for the run:

    version: 1
    name: M31
    files: {R: ..., G: ..., B: ..., outputDir: ..., targetName: ...}
    branches: {main: {label: Main}, stars: {label: Stars, forkAfterStepId: star_split}}
    steps:
      - {id: combine, branchId: main, kind: combine, params: {...}}
    runtime: {...}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .step_params import FORK_KINDS, MERGE_KINDS, parse_params

DEFAULT_CHECKPOINT_DIR = Path.home() / ".pixinsight-mcp" / "checkpoints"
DEFAULT_BRIDGE_DIR = Path.home() / ".pixinsight-mcp" / "bridge"

_FILES_RESERVED = {"outputDir", "targetName"}


@dataclass(frozen=True)
class FilesConfig:
    channels: dict[str, str]
    output_dir: str = "."
    target_name: str = "result"

    def channel_path(self, channel: str) -> Optional[str]:
        return self.channels.get(channel)


@dataclass(frozen=True)
class BranchConfig:
    id: str
    label: str = ""
    fork_after_step_id: Optional[str] = None


@dataclass(frozen=True)
class Step:
    id: str
    branch_id: str
    kind: str
    label: str = ""
    enabled: bool = True
    params: dict[str, Any] = field(default_factory=dict)
    merges: tuple[str, ...] = ()
    checkpoint: Optional[bool] = None
    typed_params: Any = None

    @property
    def is_merge(self) -> bool:
        return bool(self.merges)

    @property
    def is_fork(self) -> bool:
        return self.kind in FORK_KINDS


@dataclass(frozen=True)
class RuntimeConfig:
    bridge_dir: str = str(DEFAULT_BRIDGE_DIR)
    poll_interval: float = 0.2
    short_timeout_attempts: int = 1500
    long_timeout_attempts: int = 18000
    checkpoint_dir: str = str(DEFAULT_CHECKPOINT_DIR)
    checkpoint_steps: Optional[tuple[str, ...]] = None
    memory_warn_gb: float = 14.0
    memory_abort_gb: float = 18.0
    engine_process_name: str = "PixInsight"


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    files: FilesConfig
    branches: dict[str, BranchConfig]
    steps: tuple[Step, ...]
    version: int = 1
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    def step_index(self, step_id: str) -> int:
        for i, s in enumerate(self.steps):
            if s.id == step_id:
                return i
        raise KeyError(step_id)

    def step(self, step_id: str) -> Step:
        return self.steps[self.step_index(step_id)]

    @property
    def primary_branch(self) -> str:
        if "main" in self.branches:
            return "main"
        if self.branches:
            return next(iter(self.branches))
        return self.steps[0].branch_id if self.steps else "main"


def _runtime_from_dict(d: dict[str, Any]) -> RuntimeConfig:
    rt = RuntimeConfig()
    steps = d.get("checkpointSteps")
    return RuntimeConfig(
        bridge_dir=str(Path(d.get("bridgeDir", rt.bridge_dir)).expanduser()),
        poll_interval=float(d.get("pollInterval", rt.poll_interval)),
        short_timeout_attempts=int(d.get("shortTimeoutAttempts", rt.short_timeout_attempts)),
        long_timeout_attempts=int(d.get("longTimeoutAttempts", rt.long_timeout_attempts)),
        checkpoint_dir=str(Path(d.get("checkpointDir", rt.checkpoint_dir)).expanduser()),
        checkpoint_steps=tuple(steps) if steps is not None else None,
        memory_warn_gb=float(d.get("memoryWarnGb", rt.memory_warn_gb)),
        memory_abort_gb=float(d.get("memoryAbortGb", rt.memory_abort_gb)),
        engine_process_name=str(d.get("engineProcessName", rt.engine_process_name)),
    )


def step_from_dict(d: dict[str, Any]) -> Step:
    """Build one step; raises ValueError when its params do not fit its kind."""
    kind = str(d.get("kind") or d["id"])
    typed = parse_params(kind, d.get("params"))
    checkpoint = d.get("checkpoint")
    return Step(
        id=str(d["id"]),
        branch_id=str(d.get("branchId", "main")),
        kind=kind,
        label=str(d.get("label", "")),
        enabled=bool(d.get("enabled", True)),
        params=dict(d.get("params") or {}),
        merges=tuple(d.get("merges") or ()),
        checkpoint=None if checkpoint is None else bool(checkpoint),
        typed_params=typed,
    )


def config_from_dict(cfg: dict[str, Any]) -> PipelineConfig:
    """
    Build the typed config from an already schema-validated mapping.
    Step parameter problems raise ValueError.
    """
    files_raw = dict(cfg.get("files") or {})
    files = FilesConfig(
        channels={k: str(v) for k, v in files_raw.items() if k not in _FILES_RESERVED},
        output_dir=str(files_raw.get("outputDir", ".")),
        target_name=str(files_raw.get("targetName", cfg.get("name") or "result")),
    )
    branches = {
        bid: BranchConfig(id=bid, label=str((b or {}).get("label", bid)), fork_after_step_id=(b or {}).get("forkAfterStepId"))
        for bid, b in (cfg.get("branches") or {"main": None}).items()
    }
    steps = tuple(step_from_dict(s) for s in (cfg.get("steps") or []))
    return PipelineConfig(
        name=str(cfg.get("name", "")),
        version=int(cfg.get("version", 1)),
        files=files,
        branches=branches,
        steps=steps,
        runtime=_runtime_from_dict(dict(cfg.get("runtime") or {})),
    )


def fork_targets(step: Step) -> list[str]:
    """Branches a fork step brings to life."""
    p = step.typed_params
    if step.kind == "clone":
        return [p.into]
    if step.kind == "star_split":
        return [p.stars_branch]
    if step.kind == "open":
        return [step.branch_id]
    return []


def requires_merges(step: Step) -> bool:
    return step.kind in MERGE_KINDS
