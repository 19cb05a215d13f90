"""
Memory watch on the external engine process.

Below the warning threshold nothing happens. Between warning and abort the
undo history of every live image is purged. At or above the abort threshold
a checkpoint is written and MemoryPressureAbort is raised.
"""

import logging
from typing import Any, Callable, Dict, Optional

import psutil

from .error_handling import MemoryPressureAbort

_GB = 1024 ** 3


def engine_rss_gb(process_name: str = "PixInsight") -> Optional[float]:
    """Resident memory of all processes whose name contains process_name, in GB."""
    needle = process_name.lower()
    total = 0
    found = False
    for proc in psutil.process_iter(["name", "memory_info"]):
        try:
            name = (proc.info.get("name") or "").lower()
            if needle not in name:
                continue
            mem = proc.info.get("memory_info")
            if mem is None:
                continue
            total += mem.rss
            found = True
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return total / _GB if found else None


class ResourceMonitor:
    def __init__(
        self,
        session,
        checkpoints,
        registry_provider: Callable[[], Any],
        warn_gb: float = 14.0,
        abort_gb: float = 18.0,
        process_name: str = "PixInsight",
        sampler: Optional[Callable[[], Optional[float]]] = None,
    ):
        """
        Args:
            session: EngineSession used for history purges
            checkpoints: CheckpointStore for the emergency snapshot
            registry_provider: returns the live registry at check time
            warn_gb: purge threshold in GB
            abort_gb: checkpoint-and-abort threshold in GB
            process_name: engine process name to look for
            sampler: override for the memory sampler (returns GB or None)
        """
        if warn_gb >= abort_gb:
            raise ValueError("warn_gb must be below abort_gb")
        self.logger = logging.getLogger(__name__)
        self.session = session
        self.checkpoints = checkpoints
        self.registry_provider = registry_provider
        self.warn_gb = warn_gb
        self.abort_gb = abort_gb
        self.process_name = process_name
        self._sampler = sampler or (lambda: engine_rss_gb(self.process_name))

        self.last_sample_gb: Optional[float] = None
        self.peak_gb = 0.0
        self.purges = 0

    def sample_gb(self) -> Optional[float]:
        gb = self._sampler()
        self.last_sample_gb = gb
        if gb is not None:
            self.peak_gb = max(self.peak_gb, gb)
        return gb

    def check(self, current_step_id: str) -> None:
        gb = self.sample_gb()
        if gb is None:
            self.logger.debug(f"engine process {self.process_name!r} not found, memory check skipped")
            return
        if gb < self.warn_gb:
            return

        registry = self.registry_provider()
        if gb >= self.abort_gb:
            self.logger.error(
                f"engine memory {gb:.1f} GB >= abort threshold {self.abort_gb:.1f} GB before {current_step_id}; "
                f"writing emergency checkpoint"
            )
            self.checkpoints.save(current_step_id, registry)
            raise MemoryPressureAbort(current_step_id, gb)

        for branch_id, handle in registry.items():
            try:
                self.session.purge_history(handle)
            except Exception as e:
                self.logger.warning(f"history purge failed for {branch_id} ({handle}): {e}")
        self.purges += 1
        after = self.sample_gb()
        after_txt = f"{after:.1f} GB" if after is not None else "n/a"
        self.logger.warning(
            f"engine memory {gb:.1f} GB >= warn threshold {self.warn_gb:.1f} GB before {current_step_id}; "
            f"purged history on {len(registry)} image(s), now {after_txt}"
        )

    def get_resource_status(self) -> Dict[str, Any]:
        return {
            "process_name": self.process_name,
            "warn_gb": self.warn_gb,
            "abort_gb": self.abort_gb,
            "last_sample_gb": self.last_sample_gb,
            "peak_gb": self.peak_gb,
            "purges": self.purges,
        }
