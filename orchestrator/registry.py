"""
Branch -> engine handle table.

The engine keeps one global, string-keyed image namespace. The registry is
the only place the orchestrator maps its branches onto that namespace.
"""

import logging
import re
from typing import Iterable, Iterator, Optional

from .error_handling import PipelineError, UnknownBranchError

logger = logging.getLogger(__name__)

_INVALID_ID_CHARS = re.compile(r"[^A-Za-z0-9_]")


def sanitize_image_id(name: str) -> str:
    """Engine ids are identifiers: letters, digits, underscore, not starting with a digit."""
    s = _INVALID_ID_CHARS.sub("_", name) or "img"
    if s[0].isdigit():
        s = "_" + s
    return s


def fresh_handle_id(base: str, taken: Iterable[str]) -> str:
    """base, base_1, base_2, ... whichever is not in `taken`."""
    taken = set(taken)
    base = sanitize_image_id(base)
    if base not in taken:
        return base
    i = 1
    while f"{base}_{i}" in taken:
        i += 1
    return f"{base}_{i}"


class LiveImageRegistry:
    """At most one live handle per branch, and no handle shared by two branches."""

    def __init__(self, mapping: Optional[dict[str, str]] = None):
        self._handles: dict[str, str] = {}
        for branch_id, handle in (mapping or {}).items():
            self.register(branch_id, handle)

    def __contains__(self, branch_id: str) -> bool:
        return branch_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._handles))

    def __eq__(self, other) -> bool:
        if not isinstance(other, LiveImageRegistry):
            return NotImplemented
        return self._handles == other._handles

    def __repr__(self) -> str:
        return f"LiveImageRegistry({self._handles!r})"

    def register(self, branch_id: str, handle: str) -> None:
        for b, h in self._handles.items():
            if h == handle and b != branch_id:
                raise PipelineError(f"handle {handle!r} already belongs to branch {b!r}")
        previous = self._handles.get(branch_id)
        if previous is not None and previous != handle:
            logger.debug(f"branch {branch_id}: {previous} -> {handle}")
        self._handles[branch_id] = handle

    def handle(self, branch_id: str) -> str:
        try:
            return self._handles[branch_id]
        except KeyError:
            raise UnknownBranchError(branch_id) from None

    def get(self, branch_id: str) -> Optional[str]:
        return self._handles.get(branch_id)

    def is_live(self, branch_id: str) -> bool:
        return branch_id in self._handles

    def branches(self) -> list[str]:
        return list(self._handles)

    def handles(self) -> set[str]:
        return set(self._handles.values())

    def items(self) -> list[tuple[str, str]]:
        return list(self._handles.items())

    def snapshot(self) -> dict[str, str]:
        return dict(self._handles)

    def replace(self, mapping: dict[str, str]) -> None:
        self._handles = {}
        for branch_id, handle in mapping.items():
            self.register(branch_id, handle)

    def remove(self, branch_id: str) -> str:
        try:
            return self._handles.pop(branch_id)
        except KeyError:
            raise UnknownBranchError(branch_id) from None

    def retire(self, branch_id: str, session) -> None:
        """Close the branch's image in the engine and forget the branch."""
        handle = self.handle(branch_id)
        session.close_image(handle)
        self.remove(branch_id)
        logger.info(f"branch {branch_id} retired (closed {handle})")
