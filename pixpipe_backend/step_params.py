"""
Typed parameter sets per step kind.

Each step kind owns one dataclass. `parse_params` turns the raw `params`
mapping of a config step into that dataclass and rejects unknown keys and
wrong types, so problems surface when the config is loaded rather than in
the middle of a run.
"""

import dataclasses
import typing
from dataclasses import dataclass, field
from typing import Any, Optional

from .stretch_math import HdrOptions, StretchSpec


@dataclass(frozen=True)
class CombineParams:
    channels: list[str] = field(default_factory=lambda: ["R", "G", "B"])
    target_name: Optional[str] = None
    copy_astrometry: bool = True
    close_sources: bool = True


@dataclass(frozen=True)
class OpenParams:
    channel: str = "Ha"
    image_id: Optional[str] = None


@dataclass(frozen=True)
class CloneParams:
    into: str = ""
    image_id: Optional[str] = None
    extract_luminance: bool = False


@dataclass(frozen=True)
class ProcessParams:
    process: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    close_new_images: bool = True


@dataclass(frozen=True)
class PixelMathParams:
    expression: str = ""
    expressions: list[str] = field(default_factory=list)
    symbols: str = ""
    truncate: bool = True


@dataclass(frozen=True)
class GradientParams:
    candidates: list[dict[str, Any]] = field(default_factory=lambda: [
        {"name": "abe", "process": "AutomaticBackgroundExtractor", "parameters": {"polyDegree": 4}},
        {"name": "gradient_correction", "process": "GradientCorrection", "parameters": {}},
    ])
    box_fraction: float = 0.1
    require_improvement: bool = False


@dataclass(frozen=True)
class AutoStretchParams:
    target_background: float = 0.25
    shadows_clip: float = 2.8
    reuse_branch: Optional[str] = None


@dataclass(frozen=True)
class SetiStretchParams:
    target_median: float = 0.25
    blackpoint_sigma: float = 5.0
    no_black_clip: bool = False
    normalize: bool = False
    hdr_enabled: bool = False
    hdr_amount: float = 0.25
    hdr_knee: float = 0.35
    hdr_headroom: float = 0.0
    max_iterations: int = 5
    tolerance: float = 0.001

    @property
    def hdr(self) -> HdrOptions:
        return HdrOptions(self.hdr_enabled, self.hdr_amount, self.hdr_knee, self.hdr_headroom)


@dataclass(frozen=True)
class GhsParams:
    passes: list[dict[str, Any]] = field(default_factory=list)

    @property
    def specs(self) -> list[StretchSpec]:
        return [_stretch_spec(p) for p in self.passes]


@dataclass(frozen=True)
class StarSplitParams:
    stars_branch: str = "stars"
    process: str = "StarXTerminator"
    parameters: dict[str, Any] = field(default_factory=lambda: {"stars": True, "overlap": 0.2})


@dataclass(frozen=True)
class StarRecombineParams:
    mode: str = "screen"
    strength: float = 1.0


@dataclass(frozen=True)
class NarrowbandInjectParams:
    channel: int = 0
    strength: float = 0.5


@dataclass(frozen=True)
class LrgbCombineParams:
    parameters: dict[str, Any] = field(default_factory=dict)


STEP_PARAMS: dict[str, type] = {
    "combine": CombineParams,
    "open": OpenParams,
    "clone": CloneParams,
    "process": ProcessParams,
    "pixel_math": PixelMathParams,
    "gradient": GradientParams,
    "auto_stretch": AutoStretchParams,
    "seti_stretch": SetiStretchParams,
    "ghs": GhsParams,
    "star_split": StarSplitParams,
    "star_recombine": StarRecombineParams,
    "narrowband_inject": NarrowbandInjectParams,
    "lrgb_combine": LrgbCombineParams,
}

# kinds that fold other branches into their own and need `merges`
MERGE_KINDS = frozenset({"star_recombine", "narrowband_inject", "lrgb_combine"})

# merge kinds whose process takes a single source image
SINGLE_MERGE_KINDS = frozenset({"lrgb_combine"})

# kinds that create a new branch
FORK_KINDS = frozenset({"clone", "star_split", "open"})

_GHS_KEYS = {"D", "B", "SP", "LP", "HP", "label"}


def _stretch_spec(p: dict[str, Any]) -> StretchSpec:
    sp = p.get("SP")
    return StretchSpec(
        D=float(p["D"]),
        B=float(p.get("B", 0.0)),
        SP=None if sp is None else float(sp),
        LP=float(p.get("LP", 0.0)),
        HP=float(p.get("HP", 1.0)),
    )


def _check_type(name: str, value: Any, tp: Any) -> Any:
    origin = typing.get_origin(tp)
    args = typing.get_args(tp)
    if origin is typing.Union:
        if value is None and type(None) in args:
            return None
        inner = [a for a in args if a is not type(None)]
        return _check_type(name, value, inner[0])
    if tp is bool:
        if not isinstance(value, bool):
            raise ValueError(f"{name}: expected boolean, got {value!r}")
        return value
    if tp is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name}: expected integer, got {value!r}")
        return value
    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{name}: expected number, got {value!r}")
        return float(value)
    if tp is str:
        if not isinstance(value, str):
            raise ValueError(f"{name}: expected string, got {value!r}")
        return value
    if origin is list:
        if not isinstance(value, list):
            raise ValueError(f"{name}: expected list, got {value!r}")
        return [_check_type(f"{name}[{i}]", v, args[0]) for i, v in enumerate(value)] if args else list(value)
    if origin is dict:
        if not isinstance(value, dict):
            raise ValueError(f"{name}: expected mapping, got {value!r}")
        return dict(value)
    return value


def parse_params(kind: str, raw: Optional[dict[str, Any]]):
    """Build the typed parameter object for `kind`. Raises ValueError on bad input."""
    try:
        cls = STEP_PARAMS[kind]
    except KeyError:
        raise ValueError(f"unknown step kind {kind!r}") from None
    raw = dict(raw or {})
    hints = typing.get_type_hints(cls)
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(raw) - names)
    if unknown:
        raise ValueError(f"unknown parameter(s) for {kind}: {', '.join(unknown)}")
    values = {k: _check_type(k, v, hints[k]) for k, v in raw.items()}
    params = cls(**values)
    _post_check(kind, params)
    return params


def _post_check(kind: str, params) -> None:
    if kind == "combine" and len(params.channels) not in (1, 3):
        raise ValueError("combine: channels needs one (mono) or three (RGB) entries")
    if kind == "clone" and not params.into:
        raise ValueError("clone: 'into' branch is required")
    if kind == "process" and not params.process:
        raise ValueError("process: 'process' name is required")
    if kind == "pixel_math":
        if not params.expression and not params.expressions:
            raise ValueError("pixel_math: 'expression' or 'expressions' is required")
        if params.expressions and len(params.expressions) != 3:
            raise ValueError("pixel_math: 'expressions' needs one entry per RGB channel")
    if kind == "gradient":
        if not params.candidates:
            raise ValueError("gradient: at least one candidate is required")
        for i, c in enumerate(params.candidates):
            if not isinstance(c.get("name"), str) or not isinstance(c.get("process"), str):
                raise ValueError(f"gradient: candidates[{i}] needs 'name' and 'process'")
        if not 0.0 < params.box_fraction <= 0.5:
            raise ValueError("gradient: box_fraction must be in (0, 0.5]")
    if kind == "ghs":
        for i, p in enumerate(params.passes):
            if "D" not in p:
                raise ValueError(f"ghs: passes[{i}] needs D")
            extra = set(p) - _GHS_KEYS
            if extra:
                raise ValueError(f"ghs: passes[{i}] unknown key(s) {sorted(extra)}")
            try:
                _stretch_spec(p)
            except (TypeError, ValueError) as e:
                raise ValueError(f"ghs: passes[{i}]: {e}") from e
    if kind == "seti_stretch":
        if not 0.0 < params.target_median < 1.0:
            raise ValueError("seti_stretch: target_median must be in (0, 1)")
        if params.max_iterations < 1:
            raise ValueError("seti_stretch: max_iterations must be >= 1")
    if kind == "auto_stretch" and not 0.0 < params.target_background < 1.0:
        raise ValueError("auto_stretch: target_background must be in (0, 1)")
    if kind == "narrowband_inject" and params.channel not in (0, 1, 2):
        raise ValueError("narrowband_inject: channel must be 0, 1 or 2")
    if kind == "star_recombine" and params.mode not in ("screen", "add"):
        raise ValueError("star_recombine: mode must be 'screen' or 'add'")
