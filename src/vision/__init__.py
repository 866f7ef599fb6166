"""Image-plane geometry for ProjWarp: correspondences, homography, warp."""

from .points import CorrespondencePoint, CorrespondencePointStore, Plane, PICK_RADIUS_PX
from .homography import EstimationError, HomographyEstimator, transform_points
from .warp import FrameWarper, Interpolation

__all__ = [
    "CorrespondencePoint",
    "CorrespondencePointStore",
    "Plane",
    "PICK_RADIUS_PX",
    "EstimationError",
    "HomographyEstimator",
    "transform_points",
    "FrameWarper",
    "Interpolation",
]
