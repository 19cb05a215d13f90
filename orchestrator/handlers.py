"""
Step handlers, one per step kind.

A handler gets a StepContext and the step's typed parameters. It reaches the
engine only through ctx.session and addresses images only through the
registry; merged branches are retired by the execution engine afterwards.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from pixpipe_backend import stretch_math as sm
from pixpipe_backend.config_model import PipelineConfig, Step

from .error_handling import BridgeError, SetupError, StepError
from .gradient_selector import Candidate
from .registry import fresh_handle_id
from .stat_stretch import SetiStretchOptions, apply_auto_stretch, auto_stretch, stat_stretch

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class StepContext:
    step: Step
    config: PipelineConfig
    state: Any  # EngineState
    session: Any  # EngineSession
    selector: Any = None  # GradientSelector

    @property
    def registry(self):
        return self.state.registry

    @property
    def handle(self) -> str:
        return self.registry.handle(self.step.branch_id)


def run_process_closing_extras(session, view_id: str, process: str, parameters: dict, keep=frozenset()) -> list[str]:
    """Run a process and close any side images it opened (background models etc.)."""
    before = session.image_ids()
    session.execute_process(view_id, process, parameters)
    extras = [i for i in session.new_images_since(before) if i not in keep]
    for extra in extras:
        logger.debug(f"{process}: closing side image {extra}")
        session.close_image(extra)
    return extras


def _image_info(session, view_id: str):
    info = next((i for i in session.list_images() if i.id == view_id), None)
    if info is None:
        raise StepError(f"image {view_id} is not open in the engine")
    return info


# -- creation / forks ----------------------------------------------------

def handle_combine(ctx: StepContext, p) -> None:
    session = ctx.session
    files = ctx.config.files
    opened: dict[str, Any] = {}
    for ch in p.channels:
        path = files.channel_path(ch)
        if not path:
            raise SetupError(f"no file configured for channel {ch}")
        try:
            opened[ch] = session.open_image(path)
        except BridgeError as e:
            raise SetupError(f"cannot open channel {ch} from {path}: {e}", original_error=e) from e
        logger.info(f"  {ch}: {opened[ch].id} ({opened[ch].width}x{opened[ch].height})")

    ids = [info.id for info in opened.values()]
    live = session.image_ids()
    if len(set(ids)) != len(ids) or not set(ids) <= live:
        raise SetupError(f"cannot identify channel images unambiguously: {dict((c, i.id) for c, i in opened.items())}")
    first = next(iter(opened.values()))
    for ch, info in opened.items():
        if (info.width, info.height) != (first.width, first.height):
            raise SetupError(
                f"channel {ch} is {info.width}x{info.height}, expected {first.width}x{first.height}"
            )

    target = fresh_handle_id(p.target_name or files.target_name, live)
    color = len(ids) == 3
    expression = ids if color else ids[0]
    target = session.create_image(target, expression, first.width, first.height, color=color)
    logger.info(f"  combined {'+'.join(p.channels)} -> {target}")

    if p.copy_astrometry:
        try:
            session.copy_astrometry(ids[0], target)
        except BridgeError as e:
            logger.warning(f"astrometry not copied from {ids[0]}: {e}")
    if p.close_sources:
        for i in ids:
            session.close_image(i)
    ctx.registry.register(ctx.step.branch_id, target)


def handle_open(ctx: StepContext, p) -> None:
    if ctx.registry.is_live(ctx.step.branch_id):
        raise StepError(f"branch {ctx.step.branch_id} is already live")
    path = ctx.config.files.channel_path(p.channel)
    if not path:
        raise SetupError(f"no file configured for channel {p.channel}")
    try:
        info = ctx.session.open_image(path)
    except BridgeError as e:
        raise SetupError(f"cannot open channel {p.channel} from {path}: {e}", original_error=e) from e
    wanted = fresh_handle_id(p.image_id or f"{p.channel}_work", ctx.session.image_ids() - {info.id})
    handle = info.id if info.id == wanted else ctx.session.rename_image(info.id, wanted)
    ctx.registry.register(ctx.step.branch_id, handle)


def handle_clone(ctx: StepContext, p) -> None:
    if ctx.registry.is_live(p.into):
        raise StepError(f"branch {p.into} is already live")
    src = ctx.handle
    session = ctx.session
    new_id = fresh_handle_id(p.image_id or p.into, session.image_ids())
    if p.extract_luminance:
        info = _image_info(session, src)
        if not info.is_color:
            raise StepError(f"{src} is not a colour image, nothing to extract")
        w = sm.LUMA_WEIGHTS
        n = sm.format_number
        expr = f"{n(w[0])}*{src}[0]+{n(w[1])}*{src}[1]+{n(w[2])}*{src}[2]"
        new_id = session.create_image(new_id, expr, info.width, info.height, color=False)
    else:
        new_id = session.clone_image(src, new_id)
    ctx.registry.register(p.into, new_id)


def handle_star_split(ctx: StepContext, p) -> None:
    if ctx.registry.is_live(p.stars_branch):
        raise StepError(f"branch {p.stars_branch} is already live")
    session = ctx.session
    before = session.image_ids()
    session.execute_process(ctx.handle, p.process, p.parameters)
    fresh = [i for i in session.new_images_since(before) if i not in ctx.registry.handles()]
    if not fresh:
        raise StepError(f"{p.process} produced no star image")
    stars = next((i for i in fresh if "star" in i.lower()), fresh[0])
    for extra in fresh:
        if extra != stars:
            session.close_image(extra)
    ctx.registry.register(p.stars_branch, stars)
    logger.info(f"  stars split into {stars} ({p.stars_branch})")


# -- in-place processing -------------------------------------------------

def handle_process(ctx: StepContext, p) -> None:
    if p.close_new_images:
        run_process_closing_extras(ctx.session, ctx.handle, p.process, p.parameters, keep=ctx.registry.handles())
    else:
        ctx.session.execute_process(ctx.handle, p.process, p.parameters)


def resolve_placeholders(text: str, registry) -> str:
    """Replace {branch} with that branch's live handle id."""
    return _PLACEHOLDER.sub(lambda m: registry.handle(m.group(1)), text)


def handle_pixel_math(ctx: StepContext, p) -> None:
    if p.expressions:
        expr = [resolve_placeholders(e, ctx.registry) for e in p.expressions]
    else:
        expr = resolve_placeholders(p.expression, ctx.registry)
    ctx.session.pixel_math(ctx.handle, expr, symbols=p.symbols, truncate=p.truncate)


def handle_gradient(ctx: StepContext, p) -> None:
    if ctx.selector is None:
        raise StepError("no gradient selector configured")
    keep = ctx.registry.handles()

    def make(process: str, parameters: dict) -> Callable:
        def apply(session, view_id):
            run_process_closing_extras(session, view_id, process, parameters, keep=keep | {view_id})
        return apply

    candidates = [Candidate(c["name"], make(c["process"], dict(c.get("parameters") or {}))) for c in p.candidates]
    winner = ctx.selector.select_best(
        ctx.step.branch_id, candidates, require_improvement=p.require_improvement, box_fraction=p.box_fraction
    )
    ctx.state.notes[ctx.step.id] = {"winner": winner, "scores": dict(ctx.selector.last_scores)}


def handle_auto_stretch(ctx: StepContext, p) -> None:
    if p.reuse_branch:
        previous = ctx.state.auto_stretch.get(p.reuse_branch)
        if previous is None:
            raise StepError(f"no auto stretch recorded for branch {p.reuse_branch}")
        apply_auto_stretch(ctx.session, ctx.handle, previous)
        return
    ctx.state.auto_stretch[ctx.step.branch_id] = auto_stretch(
        ctx.session, ctx.handle, p.target_background, p.shadows_clip
    )


def handle_seti_stretch(ctx: StepContext, p) -> None:
    opts = SetiStretchOptions(
        target_median=p.target_median,
        blackpoint_sigma=p.blackpoint_sigma,
        no_black_clip=p.no_black_clip,
        normalize=p.normalize,
        hdr=p.hdr,
        max_iterations=p.max_iterations,
        tolerance=p.tolerance,
    )
    final = stat_stretch(ctx.session, ctx.handle, opts)
    ctx.state.notes[ctx.step.id] = {"median": final.median, "iterations": final.iterations, "converged": final.converged}


def handle_ghs(ctx: StepContext, p) -> None:
    view = ctx.handle
    for i, spec in enumerate(p.specs):
        median = ctx.session.statistics(view).median if spec.SP is None else spec.SP
        expr, reason = sm.ghs_expression(spec, median)
        if expr is None:
            log = logger.info if reason == "identity" else logger.warning
            log(f"[{ctx.step.id}] GHS pass {i + 1} skipped ({reason}): D={spec.D} B={spec.B} "
                f"SP={median:.6g} LP={spec.LP} HP={spec.HP}")
            continue
        ctx.session.pixel_math(view, expr, truncate=True)
        logger.info(f"[{ctx.step.id}] GHS pass {i + 1}: D={spec.D} B={spec.B} SP={median:.6g} LP={spec.LP} HP={spec.HP}")


# -- merges --------------------------------------------------------------

def handle_star_recombine(ctx: StepContext, p) -> None:
    n = sm.format_number
    for branch in ctx.step.merges:
        stars = ctx.registry.handle(branch)
        layer = stars if p.strength == 1.0 else f"{n(p.strength)}*{stars}"
        if p.mode == "screen":
            expr = f"1-(1-$T)*(1-{layer})"
        else:
            expr = f"$T+{layer}"
        ctx.session.pixel_math(ctx.handle, expr, truncate=True)


def handle_narrowband_inject(ctx: StepContext, p) -> None:
    info = _image_info(ctx.session, ctx.handle)
    if not info.is_color:
        raise StepError(f"{ctx.handle} is not a colour image")
    n = sm.format_number
    for branch in ctx.step.merges:
        nb = ctx.registry.handle(branch)
        inject = f"iif({nb}>$T,$T+{n(p.strength)}*({nb}-med({nb})),$T)"
        exprs = ["$T", "$T", "$T"]
        exprs[p.channel] = inject
        ctx.session.pixel_math(ctx.handle, exprs, truncate=True)


def handle_lrgb_combine(ctx: StepContext, p) -> None:
    if len(ctx.step.merges) != 1:
        raise StepError(f"lrgb_combine folds in exactly one luminance branch, got {list(ctx.step.merges)}")
    lum = ctx.registry.handle(ctx.step.merges[0])
    params = {"channelL": [True, lum], "channelR": [False, ""], "channelG": [False, ""], "channelB": [False, ""]}
    params.update(p.parameters)
    ctx.session.execute_process(ctx.handle, "LRGBCombination", params)


HANDLERS: dict[str, Callable[[StepContext, Any], None]] = {
    "combine": handle_combine,
    "open": handle_open,
    "clone": handle_clone,
    "process": handle_process,
    "pixel_math": handle_pixel_math,
    "gradient": handle_gradient,
    "auto_stretch": handle_auto_stretch,
    "seti_stretch": handle_seti_stretch,
    "ghs": handle_ghs,
    "star_split": handle_star_split,
    "star_recombine": handle_star_recombine,
    "narrowband_inject": handle_narrowband_inject,
    "lrgb_combine": handle_lrgb_combine,
}
