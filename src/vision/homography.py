"""
Planar homography estimation from point correspondences.

Every supplied pair is trusted: the fit is a plain least-squares DLT
(``cv2.findHomography`` with method 0), no RANSAC.  Degenerate input
(duplicate or collinear points) and numerically unusable results are
reported as ``EstimationError``.
"""

from __future__ import annotations

import logging
from typing import Sequence, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

MIN_CORRESPONDENCES = 4
DEFAULT_CONDITION_LIMIT = 1e10

PointsLike = Union[np.ndarray, Sequence[Sequence[float]]]


class EstimationError(Exception):
    """The correspondences do not determine a usable homography."""

    def __init__(self, message: str, reason: str = "degenerate"):
        super().__init__(message)
        self.reason = reason


def transform_points(H: np.ndarray, pts: PointsLike) -> np.ndarray:
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    ones = np.ones((pts.shape[0], 1), dtype=np.float64)
    ph = np.hstack([pts, ones])
    tp = (ph @ np.asarray(H, dtype=np.float64).T)
    tp = tp[:, :2] / tp[:, 2:3]
    return tp


def _is_collinear(pts: np.ndarray, tol: float = 1e-6) -> bool:
    centered = pts - pts.mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    if s[0] <= tol:
        return True
    return s[1] / s[0] <= tol


def _distinct_count(pts: np.ndarray, decimals: int = 6) -> int:
    return len(np.unique(np.round(pts, decimals), axis=0))


class HomographyEstimator:
    """Least-squares homography fit with a conditioning gate."""

    def __init__(self, condition_limit: float = DEFAULT_CONDITION_LIMIT):
        self.condition_limit = float(condition_limit)

    def estimate(self, source_points: PointsLike, dest_points: PointsLike) -> np.ndarray:
        """
        Fit H such that dest ~ H @ source (homogeneous).

        Returns:
            3x3 float64 matrix normalised so H[2, 2] == 1.
        Raises:
            ValueError: fewer than 4 pairs, or the sequences differ in length.
            EstimationError: the configuration is degenerate.
        """
        src = np.asarray(source_points, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(dest_points, dtype=np.float64).reshape(-1, 2)
        if len(src) != len(dst):
            raise ValueError("source and destination point counts differ")
        if len(src) < MIN_CORRESPONDENCES:
            raise ValueError(f"need at least {MIN_CORRESPONDENCES} correspondences, got {len(src)}")

        for name, pts in (("source", src), ("destination", dst)):
            if _distinct_count(pts) < MIN_CORRESPONDENCES:
                raise EstimationError(f"fewer than {MIN_CORRESPONDENCES} distinct {name} points")
            if _is_collinear(pts):
                raise EstimationError(f"{name} points are collinear")

        H, _ = cv2.findHomography(src, dst, 0)
        if H is None:
            raise EstimationError("solver returned no homography")
        H = np.asarray(H, dtype=np.float64)
        if not np.all(np.isfinite(H)) or abs(H[2, 2]) < 1e-12:
            raise EstimationError("homography is not finite")
        H = H / H[2, 2]

        cond = np.linalg.cond(H)
        if not np.isfinite(cond) or cond > self.condition_limit:
            raise EstimationError(f"homography is ill-conditioned (cond={cond:.3g})", reason="ill-conditioned")

        logger.debug("Estimated homography from %d pairs (cond=%.3g)", len(src), cond)
        return H
