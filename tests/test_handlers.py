import numpy as np
import pytest

from conftest import gradient_image, write_fits
from orchestrator.engine import EngineState
from orchestrator.error_handling import SetupError, StepError
from orchestrator.gradient_selector import GradientSelector
from orchestrator.handlers import HANDLERS, StepContext, resolve_placeholders
from orchestrator.registry import LiveImageRegistry
from pixpipe_backend.config_model import config_from_dict
from pixpipe_backend.step_params import STEP_PARAMS

BRANCHES = {"main": {}, "stars": {}, "ha": {}, "lum": {}}


def _ctx(engine, step, registry=None, files=None, selector=None, state=None):
    cfg = config_from_dict({
        "name": "M31",
        "files": dict(files or {}, targetName="M31"),
        "branches": BRANCHES,
        "steps": [step],
    })
    if state is None:
        state = EngineState(registry=LiveImageRegistry(registry or {}))
    return StepContext(step=cfg.steps[0], config=cfg, state=state, session=engine.session(), selector=selector)


def _run(ctx):
    HANDLERS[ctx.step.kind](ctx, ctx.step.typed_params)


def _pm_calls(engine):
    return [c for c in engine.commands if c["tool"] == "run_pixelmath"]


def test_every_step_kind_has_a_handler() -> None:
    assert set(HANDLERS) == set(STEP_PARAMS)


class TestCombine:
    def _files(self, tmp_path, shapes=((8, 8), (8, 8), (8, 8))):
        out = {}
        for ch, level, shape in zip("RGB", (0.1, 0.2, 0.3), shapes):
            out[ch] = str(write_fits(tmp_path / f"{ch}.fits", np.full(shape, level)))
        return out

    def test_rgb_combine(self, tmp_path, engine):
        ctx = _ctx(engine, {"id": "combine"}, files=self._files(tmp_path))
        _run(ctx)

        assert ctx.registry.snapshot() == {"main": "M31"}
        assert set(engine.images) == {"M31"}
        assert np.allclose(engine.images["M31"][:, 0, 0], [0.1, 0.2, 0.3])
        astro = [c for c in engine.commands if c["tool"] == "copy_astrometry"]
        assert astro[0]["parameters"] == {"sourceId": "R", "targetId": "M31"}

    def test_astrometry_failure_is_a_warning(self, tmp_path, engine):
        engine.fail["copy_astrometry"] = "no solution"
        ctx = _ctx(engine, {"id": "combine"}, files=self._files(tmp_path))
        _run(ctx)
        assert ctx.registry.is_live("main")

    def test_dimension_mismatch(self, tmp_path, engine):
        files = self._files(tmp_path, shapes=((8, 8), (8, 8), (8, 9)))
        with pytest.raises(SetupError):
            _run(_ctx(engine, {"id": "combine"}, files=files))

    def test_missing_file(self, tmp_path, engine):
        files = self._files(tmp_path)
        files["G"] = str(tmp_path / "missing.fits")
        with pytest.raises(SetupError):
            _run(_ctx(engine, {"id": "combine"}, files=files))

    def test_channels_identified_by_returned_view_id(self, tmp_path, engine, monkeypatch):
        real_open = engine._t_open_image
        monkeypatch.setattr(engine, "_t_open_image", lambda params, target: dict(real_open(params, target), id="R"))
        with pytest.raises(SetupError, match="unambiguously"):
            _run(_ctx(engine, {"id": "combine"}, files=self._files(tmp_path)))
        assert not [c for c in engine.commands if c["parameters"].get("createNewImage")]

    def test_mono_combine(self, tmp_path, engine):
        files = {"L": str(write_fits(tmp_path / "L.fits", np.full((4, 4), 0.4)))}
        ctx = _ctx(engine, {"id": "combine", "params": {"channels": ["L"], "target_name": "lum"}}, files=files)
        _run(ctx)
        assert ctx.registry.handle("main") == "lum"
        assert engine.images["lum"].shape == (4, 4)


def test_open_channel_as_branch(tmp_path, engine) -> None:
    files = {"Ha": str(write_fits(tmp_path / "masterLight_Ha.fits", np.full((4, 4), 0.2)))}
    ctx = _ctx(engine, {"id": "open_ha", "kind": "open", "branchId": "ha"}, files=files)
    _run(ctx)
    assert ctx.registry.snapshot() == {"ha": "Ha_work"}
    assert set(engine.images) == {"Ha_work"}


def test_clone_extract_luminance(engine) -> None:
    engine.add_image("M31", np.stack([np.full((4, 4), v) for v in (0.1, 0.5, 0.9)]))
    ctx = _ctx(engine, {"id": "lum", "kind": "clone", "params": {"into": "lum", "extract_luminance": True}},
               registry={"main": "M31"})
    _run(ctx)
    handle = ctx.registry.handle("lum")
    assert handle != "M31"
    assert engine.images[handle].shape == (4, 4)
    assert np.allclose(engine.images[handle], 0.2126 * 0.1 + 0.7152 * 0.5 + 0.0722 * 0.9)


def test_clone_into_live_branch_rejected(engine) -> None:
    engine.add_image("M31", np.zeros((4, 4)))
    engine.add_image("other", np.zeros((4, 4)))
    ctx = _ctx(engine, {"id": "c", "kind": "clone", "params": {"into": "lum"}}, registry={"main": "M31", "lum": "other"})
    with pytest.raises(StepError):
        _run(ctx)


def test_star_split_then_screen_recombine(engine) -> None:
    data = np.full((3, 6, 6), 0.2)
    data[:, 2, 2] = 0.95
    engine.add_image("M31", data)
    state = EngineState(registry=LiveImageRegistry({"main": "M31"}))

    split = _ctx(engine, {"id": "star_split"}, state=state)
    _run(split)
    stars = state.registry.handle("stars")
    assert "star" in stars
    assert engine.images["M31"][0, 2, 2] == 0.0

    recombine = _ctx(engine, {"id": "star_recombine", "merges": ["stars"]}, state=state)
    _run(recombine)
    assert np.allclose(engine.images["M31"], data)
    assert _pm_calls(engine)[-1]["parameters"]["expression"] == f"1-(1-$T)*(1-{stars})"


def test_narrowband_inject_red_only(engine) -> None:
    rgb = np.full((3, 4, 4), 0.2)
    ha = np.full((4, 4), 0.1)
    ha[0, 0] = 0.6
    engine.add_image("M31", rgb)
    engine.add_image("Ha_work", ha)
    ctx = _ctx(engine, {"id": "inject", "kind": "narrowband_inject", "merges": ["ha"], "params": {"strength": 0.5}},
               registry={"main": "M31", "ha": "Ha_work"})
    _run(ctx)
    out = engine.images["M31"]
    assert out[0, 0, 0] == pytest.approx(0.2 + 0.5 * (0.6 - 0.1))
    assert out[0, 1, 1] == pytest.approx(0.2)
    assert np.allclose(out[1:], 0.2)


def test_narrowband_inject_needs_colour(engine) -> None:
    engine.add_image("M31", np.zeros((4, 4)))
    engine.add_image("Ha_work", np.zeros((4, 4)))
    ctx = _ctx(engine, {"id": "inject", "kind": "narrowband_inject", "merges": ["ha"]},
               registry={"main": "M31", "ha": "Ha_work"})
    with pytest.raises(StepError):
        _run(ctx)


def test_ghs_skips_invalid_and_identity_passes(engine) -> None:
    engine.add_image("M31", np.linspace(0.01, 0.3, 121).reshape(11, 11))
    passes = [
        {"D": 1.0, "SP": 0.2, "LP": 0.3, "label": "bad pivots"},
        {"D": 0.0, "label": "no-op"},
        {"D": 0.8, "B": -1.0, "LP": 0.02, "HP": 0.95, "label": "midtone boost"},
    ]
    ctx = _ctx(engine, {"id": "ghs", "params": {"passes": passes}}, registry={"main": "M31"})
    _run(ctx)
    calls = _pm_calls(engine)
    assert len(calls) == 1
    assert calls[0]["parameters"]["expression"].startswith("iif(")


def test_pixel_math_placeholders(engine) -> None:
    engine.add_image("M31", np.full((4, 4), 0.5))
    engine.add_image("Ha_work", np.full((4, 4), 0.1))
    registry = LiveImageRegistry({"main": "M31", "ha": "Ha_work"})
    assert resolve_placeholders("$T-{ha}", registry) == "$T-Ha_work"
    ctx = _ctx(engine, {"id": "sub", "kind": "pixel_math", "params": {"expression": "$T-{ha}"}}, state=EngineState(registry=registry))
    _run(ctx)
    assert np.allclose(engine.images["M31"], 0.4)


def test_process_closes_side_images(engine) -> None:
    engine.add_image("M31", np.full((4, 4), 0.5))

    def abe(view_id, p):
        engine.images["M31_ABE_background"] = np.zeros((4, 4))
        engine.images[view_id] = engine.images[view_id] - 0.1

    engine.processes["AutomaticBackgroundExtractor"] = abe
    ctx = _ctx(engine, {"id": "abe", "kind": "process", "params": {"process": "AutomaticBackgroundExtractor"}},
               registry={"main": "M31"})
    _run(ctx)
    assert set(engine.images) == {"M31"}
    assert np.allclose(engine.images["M31"], 0.4)


def test_gradient_step_applies_winner(engine) -> None:
    base = gradient_image(48, 48)
    ramp = np.arange(48)[None, :].repeat(48, axis=0) * 0.002
    engine.add_image("M31", base)

    def full(view_id, p):
        engine.images[engine._unique("background")] = ramp
        engine.images[view_id] = engine.images[view_id] - ramp

    def partial(view_id, p):
        engine.images[view_id] = engine.images[view_id] - ramp * p["fraction"]

    engine.processes["FullFlat"] = full
    engine.processes["PartialFlat"] = partial
    state = EngineState(registry=LiveImageRegistry({"main": "M31"}))
    selector = GradientSelector(engine.session(), lambda: state.registry)
    step = {"id": "gradient", "params": {"candidates": [
        {"name": "partial", "process": "PartialFlat", "parameters": {"fraction": 0.5}},
        {"name": "full", "process": "FullFlat"},
    ]}}
    ctx = _ctx(engine, step, state=state, selector=selector)
    _run(ctx)

    assert state.notes["gradient"]["winner"] == "full"
    assert set(engine.images) == {"M31"}
    assert np.allclose(engine.images["M31"], base - ramp)


def test_auto_stretch_reuse_between_branches(engine) -> None:
    data = np.linspace(0.05, 0.15, 121).reshape(11, 11)
    engine.add_image("M31", data)
    engine.add_image("M31_stars", data)
    state = EngineState(registry=LiveImageRegistry({"main": "M31", "stars": "M31_stars"}))

    _run(_ctx(engine, {"id": "stretch", "kind": "auto_stretch"}, state=state))
    _run(_ctx(engine, {"id": "stars_stretch", "kind": "auto_stretch", "branchId": "stars",
                       "params": {"reuse_branch": "main"}}, state=state))

    assert "main" in state.auto_stretch
    assert np.array_equal(engine.images["M31"], engine.images["M31_stars"])


def test_auto_stretch_reuse_unknown_branch(engine) -> None:
    engine.add_image("M31", np.zeros((4, 4)))
    ctx = _ctx(engine, {"id": "s", "kind": "auto_stretch", "params": {"reuse_branch": "ha"}}, registry={"main": "M31"})
    with pytest.raises(StepError):
        _run(ctx)


def test_lrgb_combine(engine) -> None:
    engine.add_image("M31", np.full((3, 4, 4), 0.2))
    engine.add_image("lum", np.full((4, 4), 0.4))
    ctx = _ctx(engine, {"id": "lrgb", "kind": "lrgb_combine", "merges": ["lum"]},
               registry={"main": "M31", "lum": "lum"})
    _run(ctx)
    params = engine.commands[-1]["parameters"]["parameters"]
    assert params["channelL"] == [True, "lum"]
    assert np.allclose(engine.images["M31"], 0.4)


def test_lrgb_combine_takes_one_luminance_branch(engine) -> None:
    engine.add_image("M31", np.full((3, 4, 4), 0.2))
    engine.add_image("lum", np.full((4, 4), 0.4))
    engine.add_image("other", np.full((4, 4), 0.6))
    ctx = _ctx(engine, {"id": "lrgb", "kind": "lrgb_combine", "merges": ["lum", "other"]},
               registry={"main": "M31", "lum": "lum", "other": "other"})
    with pytest.raises(StepError):
        _run(ctx)
    assert engine.commands == []
    assert np.allclose(engine.images["M31"], 0.2)
