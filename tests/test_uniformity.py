import numpy as np
import pytest

from pixpipe_backend.uniformity import Rect, is_better, sample_regions, uniformity_score


def test_nine_regions_inside_image() -> None:
    rects = sample_regions(200, 100, 0.1)
    assert len(rects) == 9
    assert len(set(rects)) == 9
    for r in rects:
        assert 0 <= r.x0 < r.x1 <= 200
        assert 0 <= r.y0 < r.y1 <= 100
        assert r.x1 - r.x0 == 10
        assert r.y1 - r.y0 == 10


def test_regions_cover_corners_and_centre() -> None:
    rects = sample_regions(100, 100, 0.1)
    assert Rect(0, 0, 10, 10) in rects
    assert Rect(90, 90, 100, 100) in rects
    assert Rect(45, 45, 55, 55) in rects


def test_tiny_image_gets_one_pixel_boxes() -> None:
    rects = sample_regions(3, 3, 0.1)
    assert all(r.x1 - r.x0 == 1 for r in rects)


def test_invalid_size_rejected() -> None:
    with pytest.raises(ValueError):
        sample_regions(0, 10)


def test_score_is_population_std() -> None:
    assert uniformity_score([0.1] * 9) == 0.0
    assert uniformity_score([0.0, 1.0]) == pytest.approx(0.5)
    vals = [0.1, 0.12, 0.09, 0.11]
    assert uniformity_score(vals) == pytest.approx(float(np.std(vals)))


def test_score_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        uniformity_score([])
    with pytest.raises(ValueError):
        uniformity_score([0.1, float("nan")])


def test_is_better_strict() -> None:
    assert is_better(0.1, None)
    assert is_better(0.1, 0.2)
    assert not is_better(0.2, 0.2)
    assert not is_better(0.3, 0.2)
    assert not is_better(float("nan"), None)
