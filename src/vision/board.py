"""
Seed correspondences from paired still images of a chessboard.

``calibration/left`` holds images from the destination camera and
``calibration/right`` images of the same board from the source camera.
Files are sorted lexicographically and paired by index.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from .points import CorrespondencePointStore

logger = logging.getLogger(__name__)

_SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.001)


def list_images(directory: Union[str, Path], ext: str) -> List[Path]:
    directory = Path(directory)
    if not directory.is_dir():
        return []
    suffix = "." + ext.lower().lstrip(".")
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() == suffix)


def list_calibration_pairs(
    left_dir: Union[str, Path], right_dir: Union[str, Path], ext: str = "jpg"
) -> List[Tuple[Path, Path]]:
    left = list_images(left_dir, ext)
    right = list_images(right_dir, ext)
    logger.info("calib L: %d, calib R: %d", len(left), len(right))
    if len(left) != len(right):
        logger.warning("Unequal calibration image counts; extra images are ignored")
    return list(zip(left, right))


def find_board_corners(image: np.ndarray, pattern_size: Tuple[int, int]) -> Optional[np.ndarray]:
    """
    Locate inner chessboard corners.

    Returns:
        Nx2 float64 array of corners in pixel coordinates, or None.
    """
    gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    found, corners = cv2.findChessboardCorners(
        gray, pattern_size, flags=cv2.CALIB_CB_ADAPTIVE_THRESH + cv2.CALIB_CB_NORMALIZE_IMAGE
    )
    if not found or corners is None:
        return None
    corners = cv2.cornerSubPix(gray, corners, (5, 5), (-1, -1), _SUBPIX_CRITERIA)
    return corners.reshape(-1, 2).astype(np.float64)


def seed_from_directories(
    store: CorrespondencePointStore,
    left_dir: Union[str, Path],
    right_dir: Union[str, Path],
    pattern_size: Tuple[int, int],
    ext: str = "jpg",
) -> Tuple[int, Optional[Tuple[int, int]]]:
    """
    Add right-image corners as source points and left-image corners as
    destination points for every image pair where both boards are found.

    Returns:
        (pairs_added, (width, height) of the images that contributed, or None)
    """
    added = 0
    size = None
    pairs = list_calibration_pairs(left_dir, right_dir, ext)
    for i, (left_path, right_path) in enumerate(pairs, start=1):
        logger.info("calib %d/%d: L=%s R=%s", i, len(pairs), left_path, right_path)
        left = cv2.imread(str(left_path))
        right = cv2.imread(str(right_path))
        if left is None or right is None:
            logger.warning("Could not read calibration pair %s / %s", left_path, right_path)
            continue
        left_corners = find_board_corners(left, pattern_size)
        right_corners = find_board_corners(right, pattern_size)
        if left_corners is None or right_corners is None:
            logger.warning("Board not found in pair %d", i)
            continue
        if len(left_corners) != len(right_corners):
            logger.warning("Corner count mismatch in pair %d", i)
            continue

        size = (int(left.shape[1]), int(left.shape[0]))
        for src, dst in zip(right_corners, left_corners):
            store.add_pair((src[0], src[1]), (dst[0], dst[1]))
        added += len(left_corners)

    return added, size
