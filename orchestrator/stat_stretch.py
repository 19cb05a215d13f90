"""
Iterative statistical stretch and classic auto stretch, driven through the engine.

The orchestrator measures, computes the next transfer curve with
pixpipe_backend.stretch_math and dispatches it as PixelMath.
"""

import logging
from dataclasses import dataclass, field

from pixpipe_backend import stretch_math as sm

from .error_handling import BridgeError

logger = logging.getLogger(__name__)


@dataclass
class SetiStretchOptions:
    target_median: float = 0.25
    blackpoint_sigma: float = 5.0
    no_black_clip: bool = False
    normalize: bool = False
    hdr: sm.HdrOptions = field(default_factory=sm.HdrOptions)
    max_iterations: int = 5
    tolerance: float = 0.001


@dataclass
class FinalStats:
    median: float
    maximum: float
    iterations: int
    converged: bool


@dataclass
class AutoStretchResult:
    median: float
    mad: float
    shadows: float
    midtones: float


def _background_stats(stats):
    """Colour: luminance-weighted channel statistics. Mono: the channel itself."""
    if stats.is_color:
        return stats.weighted(sm.LUMA_WEIGHTS)
    return stats.channels[0]


def _measured_median(stats) -> float:
    return _background_stats(stats).median


def stat_stretch(session, view_id: str, options: SetiStretchOptions) -> FinalStats:
    """Repeat blackpoint + MTF (+ normalize, + soft knee) until the median sits on target."""
    target = options.target_median
    stats = session.statistics(view_id)
    color = stats.is_color
    median = _measured_median(stats)
    iterations = 0

    for i in range(options.max_iterations):
        if abs(median - target) < options.tolerance:
            break
        try:
            bg = _background_stats(stats)
            bp = sm.blackpoint(bg.median, bg.mad, stats.minimum if color else bg.minimum,
                               options.blackpoint_sigma, options.no_black_clip)
            rescale = sm.rescale_expression(bp, stats.maximum)
            if rescale is not None:
                session.pixel_math(view_id, rescale)
                stats = session.statistics(view_id)

            current = _measured_median(stats)
            mtf = sm.mtf_expression(current, target)
            if mtf is None:
                logger.warning(f"seti stretch {view_id}: median {current:.6g} outside (0,1), stopping")
                break
            session.pixel_math(view_id, mtf)

            if options.normalize:
                peak = session.statistics(view_id).maximum
                if peak > 1e-12:
                    session.pixel_math(view_id, f"$T/{sm.format_number(peak)}")

            if options.hdr.enabled:
                session.pixel_math(view_id, sm.hdr_expression(options.hdr, color))
        except BridgeError as e:
            logger.warning(f"seti stretch {view_id}: iteration {i + 1} failed: {e}")
            break

        iterations = i + 1
        stats = session.statistics(view_id)
        median = _measured_median(stats)
        logger.info(f"seti stretch {view_id}: iteration {iterations} median={median:.6f} target={target}")

    converged = abs(median - target) < options.tolerance
    if not converged:
        logger.warning(
            f"seti stretch {view_id}: median {median:.6f} not within {options.tolerance} of {target} "
            f"after {iterations} iteration(s)"
        )
    return FinalStats(median=median, maximum=stats.maximum, iterations=iterations, converged=converged)


def histogram_transform_parameters(shadows: float, midtones: float) -> dict:
    """HistogramTransformation table applying (shadows, midtones) on the combined RGB/K row."""
    neutral = [0.0, 0.5, 1.0, 0.0, 1.0]
    return {"H": [neutral, neutral, neutral, [shadows, midtones, 1.0, 0.0, 1.0], neutral]}


def auto_stretch(session, view_id: str, target_background: float = 0.25, shadows_clip: float = 2.8) -> AutoStretchResult:
    stats = session.statistics(view_id)
    shadows, midtones = sm.auto_stretch_parameters(stats.median, stats.mad, target_background, shadows_clip)
    logger.info(f"auto stretch {view_id}: median={stats.median:.6f} shadows={shadows:.6f} midtones={midtones:.6f}")
    session.execute_process(view_id, "HistogramTransformation", histogram_transform_parameters(shadows, midtones))
    return AutoStretchResult(median=stats.median, mad=stats.mad, shadows=shadows, midtones=midtones)


def apply_auto_stretch(session, view_id: str, previous: AutoStretchResult) -> None:
    """Stretch another image with the exact curve of an earlier auto stretch."""
    logger.info(f"auto stretch {view_id}: reusing shadows={previous.shadows:.6f} midtones={previous.midtones:.6f}")
    session.execute_process(
        view_id, "HistogramTransformation", histogram_transform_parameters(previous.shadows, previous.midtones)
    )
