"""
Tests for FrameWarper state handling and resampling.
"""

import numpy as np
import pytest

from src.vision.homography import HomographyEstimator
from src.vision.warp import PASSTHROUGH, WARPED, FrameWarper, Interpolation


def _frame(w: int = 64, h: int = 48) -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(h, w, 3), dtype=np.uint8)


def test_passthrough_returns_input_unchanged() -> None:
    warper = FrameWarper((64, 48))
    img = _frame()
    assert warper.state == PASSTHROUGH
    out = warper.apply(img)
    assert out is img


@pytest.mark.parametrize("interp", [Interpolation.NEAREST, Interpolation.BILINEAR])
def test_identity_transform_keeps_pixels(interp: Interpolation) -> None:
    warper = FrameWarper((64, 48), interp)
    warper.set_transform(np.eye(3))
    img = _frame()
    out = warper.apply(img)
    assert warper.state == WARPED
    assert out.shape == img.shape
    assert np.max(np.abs(out.astype(int) - img.astype(int))) <= 1


def test_default_interpolation_is_bilinear() -> None:
    assert FrameWarper((10, 10)).interpolation is Interpolation.BILINEAR
    assert FrameWarper((10, 10), "nearest").interpolation is Interpolation.NEAREST


def test_output_matches_target_size() -> None:
    warper = FrameWarper((80, 60))
    warper.set_transform(np.diag([0.5, 0.5, 1.0]))
    out = warper.apply(_frame(160, 120))
    assert out.shape == (60, 80, 3)


def test_estimated_transform_moves_a_blob_onto_its_partner() -> None:
    src = [(10, 10), (50, 10), (50, 40), (10, 40)]
    dst = [(20, 15), (100, 15), (100, 75), (20, 75)]
    H = HomographyEstimator().estimate(src, dst)

    img = np.zeros((120, 160), dtype=np.uint8)
    img[28:33, 28:33] = 255                    # centred on (30, 30)
    warper = FrameWarper((160, 120), Interpolation.NEAREST)
    warper.set_transform(H)
    out = warper.apply(img)

    ys, xs = np.nonzero(out)
    expected = warper.map_points([(30, 30)])[0]   # (60, 55)
    assert abs(xs.mean() - expected[0]) < 1.0
    assert abs(ys.mean() - expected[1]) < 1.0


def test_transform_is_installed_once() -> None:
    warper = FrameWarper((10, 10))
    warper.set_transform(np.eye(3))
    with pytest.raises(RuntimeError):
        warper.set_transform(np.eye(3))
    warper.reset()
    assert warper.state == PASSTHROUGH


def test_stored_transform_is_a_private_copy() -> None:
    H = np.eye(3)
    warper = FrameWarper((10, 10))
    warper.set_transform(H)
    H[0, 2] = 99.0
    assert warper.transform[0, 2] == 0.0


def test_rejects_non_3x3() -> None:
    with pytest.raises(ValueError):
        FrameWarper((10, 10)).set_transform(np.eye(2))
