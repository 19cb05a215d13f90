import pytest

from pixpipe_backend.config_model import config_from_dict, fork_targets, requires_merges, step_from_dict
from pixpipe_backend.step_params import (
    CombineParams,
    GhsParams,
    SetiStretchParams,
    parse_params,
)


def test_defaults() -> None:
    p = parse_params("combine", None)
    assert p == CombineParams()
    assert p.channels == ["R", "G", "B"]


def test_int_accepted_for_float() -> None:
    p = parse_params("seti_stretch", {"blackpoint_sigma": 4})
    assert isinstance(p.blackpoint_sigma, float)


def test_bool_is_not_a_number() -> None:
    with pytest.raises(ValueError):
        parse_params("seti_stretch", {"max_iterations": True})


def test_unknown_key_rejected() -> None:
    with pytest.raises(ValueError, match="unknown parameter"):
        parse_params("ghs", {"pases": []})


def test_unknown_kind_rejected() -> None:
    with pytest.raises(ValueError, match="unknown step kind"):
        parse_params("deconvolution", {})


@pytest.mark.parametrize(
    "kind,raw",
    [
        ("combine", {"channels": ["R", "G"]}),
        ("clone", {}),
        ("process", {}),
        ("pixel_math", {}),
        ("pixel_math", {"expressions": ["$T", "$T"]}),
        ("gradient", {"candidates": []}),
        ("gradient", {"candidates": [{"name": "abe"}]}),
        ("gradient", {"box_fraction": 0.7}),
        ("ghs", {"passes": [{"B": 0.0}]}),
        ("ghs", {"passes": [{"D": 1.0, "Q": 2}]}),
        ("ghs", {"passes": [{"D": "strong"}]}),
        ("seti_stretch", {"target_median": 1.5}),
        ("auto_stretch", {"target_background": 0.0}),
        ("narrowband_inject", {"channel": 3}),
        ("star_recombine", {"mode": "multiply"}),
    ],
)
def test_post_checks(kind, raw) -> None:
    with pytest.raises(ValueError):
        parse_params(kind, raw)


def test_ghs_specs_and_hdr_options() -> None:
    ghs = parse_params("ghs", {"passes": [{"D": 0.5, "B": -1.5, "LP": 0.03, "HP": 0.9, "label": "fine contrast"}]})
    assert isinstance(ghs, GhsParams)
    spec = ghs.specs[0]
    assert (spec.D, spec.B, spec.SP, spec.LP, spec.HP) == (0.5, -1.5, None, 0.03, 0.9)

    seti = parse_params("seti_stretch", {"hdr_enabled": True, "hdr_amount": 0.4})
    assert isinstance(seti, SetiStretchParams)
    assert seti.hdr.enabled and seti.hdr.amount == 0.4


def test_step_from_dict() -> None:
    step = step_from_dict({"id": "star_split", "params": {"stars_branch": "stars"}, "checkpoint": False})
    assert step.kind == "star_split"
    assert step.branch_id == "main"
    assert step.checkpoint is False
    assert step.is_fork
    assert fork_targets(step) == ["stars"]
    assert not requires_merges(step)


def test_merge_step_flags() -> None:
    step = step_from_dict({"id": "star_recombine", "merges": ["stars"]})
    assert step.is_merge
    assert requires_merges(step)


def test_runtime_defaults() -> None:
    cfg = config_from_dict({"name": "t", "files": {}, "steps": [{"id": "combine"}]})
    assert cfg.runtime.memory_warn_gb == 14.0
    assert cfg.runtime.memory_abort_gb == 18.0
    assert cfg.runtime.checkpoint_steps is None
    assert cfg.files.target_name == "t"
    assert cfg.primary_branch == "main"
