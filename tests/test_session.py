"""
Tests for the calibration session: read-through startup, single-shot
estimation, degenerate input handling and explicit recalibration.
"""

import numpy as np
import pytest

from src.engine.calibration import COLLECTING, READY, CalibrationSession
from src.pm.calib import CalibrationRecord, CalibrationRecordCorrupt, load_calibration, save_calibration
from src.vision.homography import HomographyEstimator
from src.vision.points import CorrespondencePointStore, Plane
from src.vision.warp import WARPED, FrameWarper

SQUARE = [(0, 0), (100, 0), (100, 100), (0, 100)]


class CountingEstimator(HomographyEstimator):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def estimate(self, source_points, dest_points):
        self.calls += 1
        return super().estimate(source_points, dest_points)


def _session(tmp_path, estimator=None):
    store = CorrespondencePointStore()
    warper = FrameWarper((320, 240))
    session = CalibrationSession(store, estimator or HomographyEstimator(), warper, tmp_path / "homography.json")
    return session, store, warper


def test_fewer_than_four_pairs_never_estimates(tmp_path) -> None:
    est = CountingEstimator()
    session, store, warper = _session(tmp_path, est)
    for p in SQUARE[:3]:
        store.add_pair(p, p)
        assert session.update() is False
    assert est.calls == 0
    assert session.state == COLLECTING
    img = np.arange(240 * 320 * 3, dtype=np.uint8).reshape(240, 320, 3)
    assert warper.apply(img) is img


def test_fit_runs_once_and_persists(tmp_path) -> None:
    est = CountingEstimator()
    session, store, warper = _session(tmp_path, est)
    for p in SQUARE:
        store.add_pair(p, (p[0] * 2 + 10, p[1] * 2 + 20))

    assert session.update() is True
    assert session.state == READY
    assert warper.state == WARPED
    assert est.calls == 1

    record = load_calibration(tmp_path / "homography.json")
    assert record is not None
    np.testing.assert_allclose(record.homography, warper.transform, atol=1e-9)
    assert record.source_points.shape == (4, 2)

    # more points do not trigger a refit
    store.add_pair((50, 50), (110, 120))
    assert session.update() is False
    assert est.calls == 1


def test_degenerate_points_stay_in_passthrough(tmp_path) -> None:
    est = CountingEstimator()
    session, store, warper = _session(tmp_path, est)
    for i in range(4):
        store.add_pair((i * 10, i * 10), (i * 10, i * 10))

    assert session.update() is False
    assert session.state == COLLECTING
    assert session.last_error
    assert not (tmp_path / "homography.json").exists()

    # no retry on the same points
    session.update()
    assert est.calls == 1

    # new points off the line trigger a new attempt
    store.add_pair((0, 100), (0, 100))
    store.add_pair((100, 0), (100, 0))
    assert session.update() is True
    assert est.calls == 2
    assert np.allclose(warper.transform, np.eye(3), atol=1e-6)


def test_startup_uses_existing_record(tmp_path) -> None:
    H = np.array([[1.0, 0.0, 5.0], [0.0, 1.0, 7.0], [0.0, 0.0, 1.0]])
    save_calibration(tmp_path / "homography.json", CalibrationRecord(H, (320, 240), (320, 240)))
    est = CountingEstimator()
    session, store, warper = _session(tmp_path, est)

    assert session.startup(tmp_path / "left", tmp_path / "right") == READY
    np.testing.assert_allclose(warper.transform, H)
    for p in SQUARE:
        store.add_pair(p, p)
    session.update()
    assert est.calls == 0


def test_startup_without_record_collects(tmp_path) -> None:
    session, store, warper = _session(tmp_path)
    assert session.startup(tmp_path / "left", tmp_path / "right") == COLLECTING
    assert store.count() == 0


def test_startup_with_corrupt_record_is_fatal(tmp_path) -> None:
    (tmp_path / "homography.json").write_text("{broken", encoding="utf-8")
    session, _, _ = _session(tmp_path)
    with pytest.raises(CalibrationRecordCorrupt):
        session.startup()


def test_save_failure_keeps_the_fit(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    store = CorrespondencePointStore()
    warper = FrameWarper((320, 240))
    session = CalibrationSession(store, HomographyEstimator(), warper, blocker / "homography.json")
    for p in SQUARE:
        store.add_pair(p, p)
    assert session.update() is True
    assert warper.state == WARPED
    assert "Could not write" in session.last_error


def test_recalibrate_resets_store_and_transform(tmp_path) -> None:
    est = CountingEstimator()
    session, store, warper = _session(tmp_path, est)
    for p in SQUARE:
        store.add_pair(p, p)
    session.update()
    assert session.state == READY

    session.recalibrate()
    assert session.state == COLLECTING
    assert store.count() == 0
    assert warper.transform is None

    for p in SQUARE:
        store.add_pair(p, (p[0] + 1, p[1]))
    assert session.update() is True
    assert est.calls == 2


def test_moving_points_off_the_line_allows_a_refit(tmp_path) -> None:
    est = CountingEstimator()
    session, store, warper = _session(tmp_path, est)
    for i in range(4):
        store.add_pair((i * 10, i * 10), (i * 10, i * 10))
    assert session.update() is False

    # drag the end points of both planes off the diagonal; count is unchanged
    for plane in (Plane.SOURCE, Plane.DEST):
        store.select(0, plane)
        store.move_selected((0, 100))
        store.select(3, plane)
        store.move_selected((100, 0))
        store.release()
    assert store.count() == 4

    assert session.update() is True
    assert est.calls == 2
    assert session.state == READY
    assert session.last_error is None
