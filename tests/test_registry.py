import pytest

from orchestrator.error_handling import PipelineError, UnknownBranchError
from orchestrator.registry import LiveImageRegistry, fresh_handle_id, sanitize_image_id


def test_sanitize_image_id() -> None:
    assert sanitize_image_id("M31 final-v2") == "M31_final_v2"
    assert sanitize_image_id("2024_run") == "_2024_run"
    assert sanitize_image_id("") == "img"


def test_fresh_handle_id_skips_taken() -> None:
    assert fresh_handle_id("M31", []) == "M31"
    assert fresh_handle_id("M31", ["M31"]) == "M31_1"
    assert fresh_handle_id("M31", ["M31", "M31_1"]) == "M31_2"


class TestLiveImageRegistry:
    def test_register_and_lookup(self):
        reg = LiveImageRegistry({"main": "M31"})
        reg.register("stars", "M31_stars")
        assert reg.handle("main") == "M31"
        assert reg.is_live("stars")
        assert reg.branches() == ["main", "stars"]
        assert reg.handles() == {"M31", "M31_stars"}
        assert len(reg) == 2
        assert "main" in reg

    def test_reassign_same_branch(self):
        reg = LiveImageRegistry({"main": "a"})
        reg.register("main", "b")
        assert reg.snapshot() == {"main": "b"}

    def test_handle_shared_by_two_branches_rejected(self):
        reg = LiveImageRegistry({"main": "a"})
        with pytest.raises(PipelineError):
            reg.register("other", "a")

    def test_unknown_branch(self):
        reg = LiveImageRegistry()
        with pytest.raises(UnknownBranchError):
            reg.handle("nope")
        with pytest.raises(UnknownBranchError):
            reg.remove("nope")
        assert reg.get("nope") is None

    def test_replace_and_equality(self):
        reg = LiveImageRegistry({"main": "a"})
        reg.replace({"main": "x", "ha": "y"})
        assert reg == LiveImageRegistry({"main": "x", "ha": "y"})

    def test_retire_closes_image(self, engine, session):
        engine.add_image("a", [[0.1]])
        engine.add_image("b", [[0.2]])
        reg = LiveImageRegistry({"main": "a", "ha": "b"})
        reg.retire("ha", session)
        assert reg.snapshot() == {"main": "a"}
        assert set(engine.images) == {"a"}
