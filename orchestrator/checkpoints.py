"""
Durable snapshots of the live branch set.

A checkpoint tagged with a step id holds the state right before that step
runs: one image file per live branch plus a JSON manifest

    <dir>/<step_id>.json
    <dir>/<step_id>__<branch_id>.xisf
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .error_handling import CheckpointNotFoundError, PipelineError
from .registry import LiveImageRegistry

logger = logging.getLogger(__name__)

# heavy steps worth a snapshot unless the step says otherwise
DEFAULT_CHECKPOINT_STEPS = frozenset({
    "gradient",
    "deconvolution",
    "denoise",
    "star_split",
})

_SAFE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _file_part(name: str) -> str:
    if not _SAFE_NAME.match(name):
        raise PipelineError(f"{name!r} cannot be used in a checkpoint file name")
    return name


@dataclass
class CheckpointImage:
    handle_id: str
    filename: str


@dataclass
class Checkpoint:
    step_id: str
    timestamp: str
    images: dict[str, CheckpointImage] = field(default_factory=dict)

    def to_manifest(self) -> dict:
        return {
            "stepId": self.step_id,
            "timestamp": self.timestamp,
            "images": {b: {"handleId": i.handle_id, "filename": i.filename} for b, i in self.images.items()},
        }

    @classmethod
    def from_manifest(cls, data: dict) -> "Checkpoint":
        images = {
            str(b): CheckpointImage(handle_id=str(i["handleId"]), filename=str(i["filename"]))
            for b, i in (data.get("images") or {}).items()
        }
        return cls(step_id=str(data["stepId"]), timestamp=str(data.get("timestamp", "")), images=images)


class CheckpointStore:
    def __init__(
        self,
        directory,
        session,
        image_extension: str = ".xisf",
        default_steps: Iterable[str] = DEFAULT_CHECKPOINT_STEPS,
    ):
        self.directory = Path(directory).expanduser()
        self.session = session
        self.image_extension = image_extension
        self.default_steps = frozenset(default_steps)

    def manifest_path(self, step_id: str) -> Path:
        return self.directory / f"{_file_part(step_id)}.json"

    def image_path(self, step_id: str, branch_id: str) -> Path:
        return self.directory / f"{_file_part(step_id)}__{_file_part(branch_id)}{self.image_extension}"

    def should_checkpoint(self, step) -> bool:
        """Explicit step flag wins; otherwise membership in the default set."""
        if step.checkpoint is not None:
            return bool(step.checkpoint)
        return step.id in self.default_steps

    def exists(self, step_id: str) -> bool:
        return self.manifest_path(step_id).is_file()

    def save(self, step_id: str, registry: LiveImageRegistry) -> Checkpoint:
        """Persist every live branch and write the manifest last."""
        self.directory.mkdir(parents=True, exist_ok=True)
        cp = Checkpoint(step_id=step_id, timestamp=datetime.now(timezone.utc).isoformat())

        for branch_id, handle in registry.items():
            path = self.image_path(step_id, branch_id)
            saved_as = self.session.save_image(handle, str(path), overwrite=True)
            if saved_as != handle:
                # the engine renamed the view while saving; put the name back
                logger.debug(f"checkpoint {step_id}: engine renamed {handle} -> {saved_as}, restoring")
                self.session.rename_image(saved_as, handle)
            cp.images[branch_id] = CheckpointImage(handle_id=handle, filename=path.name)

        tmp = self.manifest_path(step_id).with_suffix(".json.tmp")
        tmp.write_text(json.dumps(cp.to_manifest(), indent=2), encoding="utf-8")
        os.replace(tmp, self.manifest_path(step_id))
        logger.info(f"checkpoint saved before {step_id}: {sorted(cp.images)}")
        return cp

    def load(self, step_id: str) -> Checkpoint:
        mp = self.manifest_path(step_id)
        if not mp.is_file():
            raise CheckpointNotFoundError(step_id, mp)
        try:
            return Checkpoint.from_manifest(json.loads(mp.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PipelineError(f"checkpoint manifest {mp} is unreadable: {e}", original_error=e) from e

    def restore(self, step_id: str, registry: Optional[LiveImageRegistry] = None) -> LiveImageRegistry:
        """
        Close whatever is live, reopen the recorded files and give each image
        back its recorded handle id. Fails before touching the engine when
        the manifest is missing.
        """
        cp = self.load(step_id)
        for branch_id, img in cp.images.items():
            if not (self.directory / img.filename).is_file():
                raise CheckpointNotFoundError(step_id, self.directory / img.filename)

        if registry is not None:
            for branch_id in registry.branches():
                registry.retire(branch_id, self.session)

        wanted = {img.handle_id for img in cp.images.values()}
        for stale in sorted(self.session.image_ids() & wanted):
            logger.debug(f"closing stale {stale} before restore")
            self.session.close_image(stale)

        restored = LiveImageRegistry()
        for branch_id, img in cp.images.items():
            info = self.session.open_image(str(self.directory / img.filename))
            handle = info.id
            if handle != img.handle_id:
                handle = self.session.rename_image(handle, img.handle_id)
            restored.register(branch_id, handle)

        if registry is not None:
            registry.replace(restored.snapshot())
            restored = registry
        logger.info(f"checkpoint {step_id} restored: {restored.snapshot()}")
        return restored

    def list_checkpoints(self) -> dict[str, dict]:
        out: dict[str, dict] = {}
        if not self.directory.is_dir():
            return out
        for p in sorted(self.directory.glob("*.json")):
            try:
                cp = Checkpoint.from_manifest(json.loads(p.read_text(encoding="utf-8")))
            except (ValueError, KeyError, TypeError):
                logger.warning(f"skipping unreadable checkpoint manifest {p}")
                continue
            out[cp.step_id] = {"timestamp": cp.timestamp, "branches": sorted(cp.images)}
        return out

    def clear(self) -> int:
        """Delete every manifest and checkpoint image. Returns the number of files removed."""
        if not self.directory.is_dir():
            return 0
        removed = 0
        for p in self.directory.iterdir():
            if p.is_file() and (p.suffix == ".json" or p.suffix == self.image_extension or p.name.endswith(".json.tmp")):
                p.unlink()
                removed += 1
        logger.info(f"cleared {removed} checkpoint file(s) from {self.directory}")
        return removed
