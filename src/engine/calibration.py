"""
Calibration session state for ProjWarp.

A session is either *collecting* correspondences or *ready* with a fitted
homography installed in the FrameWarper.  The estimator runs at most once per
session: after a successful fit, added points do not trigger a refit.  A
new session starts only through ``recalibrate()``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

from ..pm.calib import (
    CalibrationRecord,
    CalibrationSaveError,
    load_calibration,
    save_calibration,
)
from ..vision.board import seed_from_directories
from ..vision.homography import MIN_CORRESPONDENCES, EstimationError, HomographyEstimator
from ..vision.points import CorrespondencePointStore
from ..vision.warp import FrameWarper

logger = logging.getLogger(__name__)

COLLECTING = "collecting"
READY = "ready"


class CalibrationSession:
    """Glues the point store, estimator, persistence and warper together."""

    def __init__(
        self,
        store: CorrespondencePointStore,
        estimator: HomographyEstimator,
        warper: FrameWarper,
        record_path: Union[str, Path],
        source_size: Optional[Tuple[int, int]] = None,
        target_size: Optional[Tuple[int, int]] = None,
    ) -> None:
        self.store = store
        self.estimator = estimator
        self.warper = warper
        self.record_path = Path(record_path)
        self.source_size = source_size or warper.size
        self.target_size = target_size or warper.size
        self.record: Optional[CalibrationRecord] = None
        self.last_error: Optional[str] = None
        self._attempted_at: Optional[int] = None

    @property
    def state(self) -> str:
        return READY if self.warper.is_ready else COLLECTING

    def startup(
        self,
        left_dir: Optional[Union[str, Path]] = None,
        right_dir: Optional[Union[str, Path]] = None,
        pattern_size: Tuple[int, int] = (9, 6),
        ext: str = "jpg",
    ) -> str:
        """
        Read-through: a stored record makes the session ready immediately.
        Otherwise seed the point store from the still-image directories.

        Raises:
            CalibrationRecordCorrupt: the stored record is unreadable.
        """
        record = load_calibration(self.record_path)
        if record is not None:
            self._install(record)
            return self.state

        logger.info("No calibration record at %s, collecting correspondences", self.record_path)
        if left_dir is not None and right_dir is not None:
            added, size = seed_from_directories(self.store, left_dir, right_dir, pattern_size, ext)
            if size is not None:
                self.source_size = self.target_size = size
            logger.info("Seeded %d correspondences from board detection", added)
        return self.state

    def _install(self, record: CalibrationRecord) -> None:
        self.record = record
        self.warper.set_transform(record.homography)
        logger.info("Homography ready, warping %s", self.warper.interpolation.value)

    def update(self) -> bool:
        """
        Run the estimator if the session is collecting, has enough pairs and
        the points were added or moved since the last failed attempt.

        Returns True on the cycle the session becomes ready.
        """
        if self.warper.is_ready:
            return False
        n = self.store.count()
        revision = self.store.revision
        if n < MIN_CORRESPONDENCES or revision == self._attempted_at:
            return False

        self._attempted_at = revision
        src, dst = self.store.as_arrays()
        try:
            H = self.estimator.estimate(src, dst)
        except EstimationError as e:
            self.last_error = str(e)
            logger.warning("Homography estimation failed (%s): %s", e.reason, e)
            return False

        self.last_error = None
        record = CalibrationRecord(
            homography=H,
            source_size=self.source_size,
            target_size=self.target_size,
            source_points=src,
            dest_points=dst,
        )
        self._install(record)
        try:
            save_calibration(self.record_path, record)
        except CalibrationSaveError as e:
            self.last_error = str(e)
            logger.error("%s", e)
        return True

    def recalibrate(self) -> None:
        """Drop the transform and every correspondence in one step."""
        self.store.clear()
        self.warper.reset()
        self.record = None
        self.last_error = None
        self._attempted_at = None
        logger.info("Recalibration requested, collecting correspondences")
