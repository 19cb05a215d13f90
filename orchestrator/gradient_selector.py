"""
Pick the background-correction method that leaves the flattest background.

Each candidate runs on its own fresh copy of the live image, the copy is
scored with the regional-median uniformity score, and only the winner is
applied to the live image.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from pixpipe_backend.uniformity import is_better, sample_regions, uniformity_score

from .registry import fresh_handle_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    name: str
    apply: Callable[..., None]  # apply(session, view_id)


def measure_uniformity(session, view_id: str, box_fraction: float = 0.1) -> float:
    info = next((i for i in session.list_images() if i.id == view_id), None)
    if info is None:
        raise LookupError(f"image {view_id} is not open")
    medians = []
    for rect in sample_regions(info.width, info.height, box_fraction):
        medians.append(session.statistics(view_id, rect=rect).median)
    return uniformity_score(medians)


class GradientSelector:
    def __init__(self, session, registry_provider: Callable, box_fraction: float = 0.1):
        self.session = session
        self.registry_provider = registry_provider
        self.box_fraction = box_fraction
        self.last_scores: dict[str, float] = {}
        self.last_baseline: Optional[float] = None

    def select_best(
        self,
        branch_id: str,
        candidates: Sequence[Candidate],
        require_improvement: bool = False,
        box_fraction: Optional[float] = None,
    ) -> Optional[str]:
        """
        Returns the winning candidate name, or None when nothing was applied.
        Ties go to the candidate listed first.
        """
        box = self.box_fraction if box_fraction is None else box_fraction
        live = self.registry_provider().handle(branch_id)
        self.last_scores = {}
        baseline = measure_uniformity(self.session, live, box)
        self.last_baseline = baseline
        logger.info(f"[{branch_id}] uniformity baseline {baseline:.6g}")

        best_name: Optional[str] = None
        best_score: Optional[float] = None
        winner: Optional[Candidate] = None
        for cand in candidates:
            trial = fresh_handle_id(f"{live}_{cand.name}_trial", self.session.image_ids())
            trial = self.session.clone_image(live, trial)
            try:
                cand.apply(self.session, trial)
                score = measure_uniformity(self.session, trial, box)
            except Exception as e:
                logger.warning(f"[{branch_id}] candidate {cand.name} failed: {e}")
                continue
            finally:
                self.session.close_image(trial)
            self.last_scores[cand.name] = score
            logger.info(f"[{branch_id}] candidate {cand.name}: uniformity {score:.6g}")
            if is_better(score, best_score):
                best_name, best_score, winner = cand.name, score, cand

        if winner is None:
            logger.warning(f"[{branch_id}] no gradient candidate succeeded; image left unchanged")
            return None
        if require_improvement and not best_score < baseline:
            logger.info(
                f"[{branch_id}] best candidate {best_name} ({best_score:.6g}) does not beat baseline "
                f"({baseline:.6g}); image left unchanged"
            )
            return None

        winner.apply(self.session, live)
        logger.info(f"[{branch_id}] applied {best_name} (uniformity {best_score:.6g}, baseline {baseline:.6g})")
        return best_name
