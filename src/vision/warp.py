"""
Per-frame perspective warp.

A FrameWarper starts in passthrough (frames are returned untouched) and
switches to warped once a transform is installed.  Interpolation trades
speed for quality: nearest-neighbour is the fastest and blockiest,
bilinear is smoother and the default.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .homography import transform_points

PASSTHROUGH = "passthrough"
WARPED = "warped"


class Interpolation(str, Enum):
    NEAREST = "nearest"
    BILINEAR = "bilinear"


_CV_FLAGS = {
    Interpolation.NEAREST: cv2.INTER_NEAREST,
    Interpolation.BILINEAR: cv2.INTER_LINEAR,
}


class FrameWarper:
    def __init__(
        self,
        size: Tuple[int, int],
        interpolation: Union[Interpolation, str] = Interpolation.BILINEAR,
    ):
        self.size = (int(size[0]), int(size[1]))
        self.interpolation = Interpolation(interpolation)
        self._H: Optional[np.ndarray] = None

    @property
    def state(self) -> str:
        return PASSTHROUGH if self._H is None else WARPED

    @property
    def is_ready(self) -> bool:
        return self._H is not None

    @property
    def transform(self) -> Optional[np.ndarray]:
        return None if self._H is None else self._H.copy()

    def set_transform(self, H: np.ndarray) -> None:
        if self._H is not None:
            raise RuntimeError("warper already holds a transform; reset() first")
        H = np.array(H, dtype=np.float64)
        if H.shape != (3, 3):
            raise ValueError(f"transform must be 3x3, got {H.shape}")
        # publish a private, read-only copy in one assignment
        H.setflags(write=False)
        self._H = H

    def reset(self) -> None:
        self._H = None

    def apply(self, image: np.ndarray) -> np.ndarray:
        """Warp ``image`` into a buffer of ``self.size``; passthrough returns it unchanged."""
        H = self._H
        if H is None:
            return image
        return cv2.warpPerspective(image, H, self.size, flags=_CV_FLAGS[self.interpolation])

    def map_points(self, pts) -> np.ndarray:
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        H = self._H
        if H is None:
            return pts.copy()
        return transform_points(H, pts)
