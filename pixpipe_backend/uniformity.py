"""Background flatness score from regional medians."""

from __future__ import annotations

import math
from typing import Iterable, NamedTuple

import numpy as np


class Rect(NamedTuple):
    x0: int
    y0: int
    x1: int
    y1: int


def sample_regions(width: int, height: int, box_fraction: float = 0.1) -> list[Rect]:
    """
    Nine square sample boxes: four corners, four edge midpoints, centre.
    Box side is box_fraction of the shorter image side (at least 1 px).
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid image size {width}x{height}")
    side = max(1, int(round(min(width, height) * float(box_fraction))))
    side = min(side, width, height)
    xs = (0, (width - side) // 2, width - side)
    ys = (0, (height - side) // 2, height - side)
    return [Rect(x, y, x + side, y + side) for y in ys for x in xs]


def uniformity_score(medians: Iterable[float]) -> float:
    """Population standard deviation of the regional medians. Lower is flatter."""
    arr = np.asarray(list(medians), dtype=np.float64)
    if arr.size == 0:
        raise ValueError("no regional medians")
    if not np.all(np.isfinite(arr)):
        raise ValueError("non-finite regional median")
    return float(np.std(arr))


def is_better(score: float, best: float | None) -> bool:
    """Strictly lower wins; ties keep the earlier one."""
    if not math.isfinite(score):
        return False
    return best is None or score < best
