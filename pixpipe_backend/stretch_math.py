"""
Tone-curve math computed on the orchestrator side.

Generalized hyperbolic stretch (GHS): closed-form coefficients for the four
segments [0,LP) [LP,SP) [SP,HP) [HP,1] and their rendering into a single
PixelMath expression. Statistical stretch: blackpoint, midtone transfer and
the Hermite soft knee used for highlight compression.

Nothing here touches the engine; the numpy evaluators sample curves only.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np

MAD_TO_SIGMA = 1.4826
LUMA_WEIGHTS = (0.2126, 0.7152, 0.0722)

_NON_FINITE = re.compile(r"\b(nan|inf|infinity)\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# GHS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StretchSpec:
    """One GHS pass. SP=None means: use the image's current median."""
    D: float
    B: float = 0.0
    SP: Optional[float] = None
    LP: float = 0.0
    HP: float = 1.0

    def resolved(self, current_median: float) -> "StretchSpec":
        if self.SP is not None:
            return self
        return StretchSpec(self.D, self.B, float(current_median), self.LP, self.HP)

    def validate(self) -> Optional[str]:
        """Reason string when the pivots are unusable, else None."""
        sp = self.SP
        if sp is None:
            return "SP unresolved"
        for name, v in (("D", self.D), ("B", self.B), ("SP", sp), ("LP", self.LP), ("HP", self.HP)):
            if not math.isfinite(v):
                return f"{name} is not finite"
        if self.LP < 0.0 or self.HP > 1.0:
            return f"pivots outside [0,1]: LP={self.LP} HP={self.HP}"
        if self.LP >= sp:
            return f"LP ({self.LP}) must be < SP ({sp})"
        if self.HP <= sp:
            return f"HP ({self.HP}) must be > SP ({sp})"
        return None


@dataclass(frozen=True)
class GHSCoefficients:
    kind: str  # "log" | "exp" | "pow" | "identity"
    LP: float
    SP: float
    HP: float
    a1: float = 0.0
    b1: float = 1.0
    a2: float = 0.0
    b2: float = 0.0
    c2: float = 0.0
    d2: float = 0.0
    e2: float = 0.0
    a3: float = 0.0
    b3: float = 0.0
    c3: float = 0.0
    d3: float = 0.0
    e3: float = 0.0
    a4: float = 0.0
    b4: float = 1.0

    @property
    def is_identity(self) -> bool:
        return self.kind == "identity"

    def _inner(self, x: np.ndarray, a: float, b: float, c: float, d: float, e: float) -> np.ndarray:
        arg = c + d * x
        if self.kind == "log":
            return a + b * np.log(arg)
        if self.kind == "exp":
            return a + b * np.exp(arg)
        return a + b * np.exp(e * np.log(arg))

    def evaluate(self, x) -> np.ndarray:
        """Sample the curve at x (values in [0,1])."""
        x = np.asarray(x, dtype=np.float64)
        if self.is_identity:
            return x.copy()
        out = np.empty_like(x)
        s1 = x < self.LP
        s2 = (~s1) & (x < self.SP)
        s3 = (~s1) & (~s2) & (x < self.HP)
        s4 = ~(s1 | s2 | s3)
        with np.errstate(all="ignore"):
            out[s1] = self.a1 + self.b1 * x[s1]
            out[s2] = self._inner(x[s2], self.a2, self.b2, self.c2, self.d2, self.e2)
            out[s3] = self._inner(x[s3], self.a3, self.b3, self.c3, self.d3, self.e3)
            out[s4] = self.a4 + self.b4 * x[s4]
        return out

    def as_dict(self) -> dict:
        return asdict(self)


def identity_coefficients(SP: float, LP: float = 0.0, HP: float = 1.0) -> GHSCoefficients:
    return GHSCoefficients(kind="identity", LP=LP, SP=SP, HP=HP)


def derive_coefficients(D_log: float, B: float, SP: float, LP: float = 0.0, HP: float = 1.0) -> Optional[GHSCoefficients]:
    """
    Segment coefficients for one GHS pass.

    Returns None for unusable input (pivot ordering, non-finite values) and an
    identity marker when the stretch intensity is zero. Never raises.
    """
    try:
        return _derive(float(D_log), float(B), float(SP), float(LP), float(HP))
    except (ArithmeticError, ValueError, TypeError):
        return None


def _derive(D_log: float, B: float, SP: float, LP: float, HP: float) -> Optional[GHSCoefficients]:
    if StretchSpec(D_log, B, SP, LP, HP).validate() is not None:
        return None

    D = math.exp(D_log) - 1.0
    if D == 0.0:
        return identity_coefficients(SP, LP, HP)

    if B == -1.0:
        qlp = -math.log(1 + D * (SP - LP))
        q0 = qlp - D * LP / (1 + D * (SP - LP))
        qwp = math.log(1 + D * (HP - SP))
        q1 = qwp + D * (1 - HP) / (1 + D * (HP - SP))
        q = 1 / (q1 - q0)
        c = GHSCoefficients(
            kind="log", LP=LP, SP=SP, HP=HP,
            a1=0.0, b1=D / (1 + D * (SP - LP)) * q,
            a2=-q0 * q, b2=-q, c2=1 + D * SP, d2=-D,
            a3=-q0 * q, b3=q, c3=1 - D * SP, d3=D,
            a4=(qwp - q0 - D * HP / (1 + D * (HP - SP))) * q, b4=q * D / (1 + D * (HP - SP)),
        )
    elif B == 0.0:
        qlp = math.exp(-D * (SP - LP))
        q0 = qlp - D * LP * math.exp(-D * (SP - LP))
        qwp = 2 - math.exp(-D * (HP - SP))
        q1 = qwp + D * (1 - HP) * math.exp(-D * (HP - SP))
        q = 1 / (q1 - q0)
        c = GHSCoefficients(
            kind="exp", LP=LP, SP=SP, HP=HP,
            a1=0.0, b1=D * math.exp(-D * (SP - LP)) * q,
            a2=-q0 * q, b2=q, c2=-D * SP, d2=D,
            a3=(2 - q0) * q, b3=-q, c3=D * SP, d3=-D,
            a4=(qwp - q0 - D * HP * math.exp(-D * (HP - SP))) * q, b4=D * math.exp(-D * (HP - SP)) * q,
        )
    elif B < 0.0:
        aB = -B
        lo = 1 + D * aB * (SP - LP)
        hi = 1 + D * aB * (HP - SP)
        qlp = (1 - lo ** ((aB - 1) / aB)) / (aB - 1)
        q0 = qlp - D * LP * lo ** (-1 / aB)
        qwp = (hi ** ((aB - 1) / aB) - 1) / (aB - 1)
        q1 = qwp + D * (1 - HP) * hi ** (-1 / aB)
        q = 1 / (q1 - q0)
        c = GHSCoefficients(
            kind="pow", LP=LP, SP=SP, HP=HP,
            a1=0.0, b1=D * lo ** (-1 / aB) * q,
            a2=(1 / (aB - 1) - q0) * q, b2=-q / (aB - 1), c2=1 + D * aB * SP, d2=-D * aB, e2=(aB - 1) / aB,
            a3=(-1 / (aB - 1) - q0) * q, b3=q / (aB - 1), c3=1 - D * aB * SP, d3=D * aB, e3=(aB - 1) / aB,
            a4=(qwp - q0 - D * HP * hi ** (-1 / aB)) * q, b4=D * hi ** (-1 / aB) * q,
        )
    else:
        lo = 1 + D * B * (SP - LP)
        hi = 1 + D * B * (HP - SP)
        qlp = lo ** (-1 / B)
        q0 = qlp - D * LP * lo ** (-(1 + B) / B)
        qwp = 2 - hi ** (-1 / B)
        q1 = qwp + D * (1 - HP) * hi ** (-(1 + B) / B)
        q = 1 / (q1 - q0)
        c = GHSCoefficients(
            kind="pow", LP=LP, SP=SP, HP=HP,
            a1=0.0, b1=D * lo ** (-(1 + B) / B) * q,
            a2=-q0 * q, b2=q, c2=1 + D * B * SP, d2=-D * B, e2=-1 / B,
            a3=(2 - q0) * q, b3=-q, c3=1 - D * B * SP, d3=D * B, e3=-1 / B,
            a4=(qwp - q0 - D * HP * hi ** (-(B + 1) / B)) * q, b4=D * hi ** (-(B + 1) / B) * q,
        )

    values = [v for k, v in asdict(c).items() if k != "kind"]
    if not all(isinstance(v, float) and math.isfinite(v) for v in values):
        return None
    return c


def format_number(v: float) -> str:
    """12 decimals, trailing zeros trimmed, negatives parenthesised."""
    if v == 0:
        v = 0.0
    s = f"{v:.12f}"
    if "." in s:
        s = s.rstrip("0")
        if s.endswith("."):
            s += "0"
    return f"({s})" if v < 0 else s


def _segment(c: GHSCoefficients, a: float, b: float, cc: float, d: float, e: float) -> str:
    n = format_number
    if c.kind == "log":
        return f"{n(a)}+{n(b)}*ln({n(cc)}+{n(d)}*$T)"
    if c.kind == "exp":
        return f"{n(a)}+{n(b)}*exp({n(cc)}+{n(d)}*$T)"
    return f"{n(a)}+{n(b)}*exp({n(e)}*ln({n(cc)}+{n(d)}*$T))"


def build_expression(c: GHSCoefficients) -> Optional[str]:
    """
    Render the coefficients as one PixelMath expression.

    Returns None when the rendered text carries non-finite markers.
    """
    n = format_number
    if c.is_identity:
        return "$T"
    e1 = f"{n(c.a1)}+{n(c.b1)}*$T"
    e2 = _segment(c, c.a2, c.b2, c.c2, c.d2, c.e2)
    e3 = _segment(c, c.a3, c.b3, c.c3, c.d3, c.e3)
    e4 = f"{n(c.a4)}+{n(c.b4)}*$T"

    expr = e3
    if c.HP < 1.0:
        expr = f"iif($T<{n(c.HP)},{e3},{e4})"
    if c.LP < c.SP:
        expr = f"iif($T<{n(c.SP)},{e2},{expr})"
    if c.LP > 0.0:
        expr = f"iif($T<{n(c.LP)},{e1},{expr})"

    if _NON_FINITE.search(expr):
        return None
    return expr


def ghs_expression(spec: StretchSpec, current_median: float) -> tuple[Optional[str], str]:
    """
    Resolve SP, validate and render one pass.

    Returns (expression, reason). expression is None when the pass must be
    skipped; "$T" is never returned, an identity pass gives (None, "identity").
    """
    s = spec.resolved(current_median)
    reason = s.validate()
    if reason is not None:
        return None, reason
    coeffs = derive_coefficients(s.D, s.B, s.SP, s.LP, s.HP)
    if coeffs is None:
        return None, "degenerate coefficients"
    if coeffs.is_identity:
        return None, "identity"
    expr = build_expression(coeffs)
    if expr is None:
        return None, "non-finite expression"
    return expr, "ok"


# ---------------------------------------------------------------------------
# Statistical stretch
# ---------------------------------------------------------------------------

def blackpoint(median: float, mad: float, minimum: float, sigma: float, no_black_clip: bool = False) -> float:
    """Background level median - sigma * 1.4826 * MAD, never below the image minimum."""
    if no_black_clip:
        return float(minimum)
    return max(float(minimum), float(median) - float(sigma) * MAD_TO_SIGMA * float(mad))


def rescale_expression(bp: float, maximum: float) -> Optional[str]:
    """Affine map bp -> 0, maximum -> 1. None when the range is empty."""
    span = float(maximum) - float(bp)
    if span <= 1e-12:
        return None
    n = format_number
    return f"($T-{n(bp)})/{n(span)}"


def mtf(x, median: float, target: float):
    """Rational transfer mapping `median` to `target`, 0 to 0 and 1 to 1."""
    x = np.asarray(x, dtype=np.float64)
    m, t = float(median), float(target)
    den = m * (t + x - 1) - t * x
    with np.errstate(all="ignore"):
        y = np.where(np.abs(den) < 1e-12, x, ((m - 1) * t * x) / den)
    return y


def mtf_expression(median: float, target: float) -> Optional[str]:
    """PixelMath form of mtf(). None when median is outside (0, 1)."""
    m, t = float(median), float(target)
    if not (0.0 < m < 1.0) or not (0.0 < t < 1.0):
        return None
    n = format_number
    return f"({n((m - 1) * t)}*$T)/({n(m)}*({n(t - 1)}+$T)-{n(t)}*$T)"


def midtones_balance(x: float, target: float) -> float:
    """Midtones balance m with MTF(m, x) == target (histogram transformation form)."""
    den = x * (1 - 2 * target) + target
    if abs(den) < 1e-12:
        return 0.5
    return min(1.0, max(0.0, x * (1 - target) / den))


def auto_stretch_parameters(median: float, mad: float, target: float = 0.25, shadows_clip: float = 2.8) -> tuple[float, float]:
    """Shadows clip point c0 and midtones balance for a classic auto stretch."""
    c0 = max(0.0, float(median) - float(shadows_clip) * float(mad))
    if c0 >= 1.0:
        return c0, 0.5
    x = (float(median) - c0) / (1 - c0)
    return c0, midtones_balance(x, target)


@dataclass(frozen=True)
class HdrOptions:
    enabled: bool = False
    amount: float = 0.25
    knee: float = 0.35
    headroom: float = 0.0


def hdr_constants(opts: HdrOptions) -> tuple[float, float, float]:
    """(knee, end slope m1, ceiling ep) after clamping."""
    k = min(max(float(opts.knee), 0.1), 0.999999)
    m1 = min(max(1.0 + 4.0 * float(opts.amount), 1.0), 5.0)
    ep = 1.0 - float(opts.headroom)
    return k, m1, ep


def hdr_curve(x, opts: HdrOptions) -> np.ndarray:
    """Numpy form of the soft knee, identity below the knee."""
    x = np.asarray(x, dtype=np.float64)
    k, m1, ep = hdr_constants(opts)
    t = np.clip((x - k) / (1 - k), 0.0, 1.0)
    h10 = t ** 3 - 2 * t ** 2 + t
    h01 = -2 * t ** 3 + 3 * t ** 2
    h11 = t ** 3 - t ** 2
    f = np.clip(h10 + h01 * ep + h11 * m1, 0.0, 1.0)
    return np.where(x > k, k + (1 - k) * f, x)


def _hdr_of(x: str, k: float, m1: float, ep: float) -> str:
    n = format_number
    t = f"min(max(({x}-{n(k)})/{n(1 - k)},0),1)"
    t2 = f"({t}*{t})"
    t3 = f"({t2}*{t})"
    f = f"({t3}-2*{t2}+{t})+(3*{t2}-2*{t3})*{n(ep)}+({t3}-{t2})*{n(m1)}"
    return f"{n(k)}+{n(1 - k)}*min(max({f},0),1)"


def hdr_expression(opts: HdrOptions, color: bool) -> str | list[str]:
    """
    Soft knee as PixelMath. Mono: applied to $T. Colour: computed on the
    luminance and applied to each channel as a ratio.
    """
    k, m1, ep = hdr_constants(opts)
    n = format_number
    if not color:
        return f"iif($T>{n(k)},{_hdr_of('$T', k, m1, ep)},$T)"
    w = LUMA_WEIGHTS
    lum = f"({n(w[0])}*$T[0]+{n(w[1])}*$T[1]+{n(w[2])}*$T[2])"
    per = f"iif({lum}>{n(k)},$T*({_hdr_of(lum, k, m1, ep)})/max({lum},0.0000000001),$T)"
    return [per, per, per]
