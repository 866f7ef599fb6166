from __future__ import annotations
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple, Dict, Any, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

CALIB_FILENAME = "homography.json"


class CalibrationRecordCorrupt(ValueError):
    """A calibration record exists but cannot be parsed."""


class CalibrationSaveError(OSError):
    """A calibration record could not be written."""


@dataclass
class CalibrationRecord:
    """
    Persisted form of a fitted homography.

    Attributes:
        homography: 3x3 float64 matrix mapping source-plane pixels to target-plane pixels.
        source_size: (width, height) of the source images used for the fit.
        target_size: (width, height) of the target images used for the fit.
        source_points / dest_points: optional raw correspondences, Nx2.
    """
    homography: np.ndarray
    source_size: Tuple[int, int]
    target_size: Tuple[int, int]
    source_points: Optional[np.ndarray] = None
    dest_points: Optional[np.ndarray] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "homography": np.asarray(self.homography, dtype=np.float64).tolist(),
            "source_size": {"width": int(self.source_size[0]), "height": int(self.source_size[1])},
            "target_size": {"width": int(self.target_size[0]), "height": int(self.target_size[1])},
            "created_at": self.created_at,
        }
        if self.source_points is not None and self.dest_points is not None:
            data["source_points"] = np.asarray(self.source_points, dtype=np.float64).tolist()
            data["dest_points"] = np.asarray(self.dest_points, dtype=np.float64).tolist()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationRecord":
        H = np.array(data["homography"], dtype=np.float64)
        if H.shape != (3, 3) or not np.all(np.isfinite(H)):
            raise ValueError(f"homography must be a finite 3x3 matrix, got shape {H.shape}")
        sw = int(data["source_size"]["width"])
        sh = int(data["source_size"]["height"])
        tw = int(data["target_size"]["width"])
        th = int(data["target_size"]["height"])

        src = dst = None
        if "source_points" in data or "dest_points" in data:
            src = np.array(data["source_points"], dtype=np.float64).reshape(-1, 2)
            dst = np.array(data["dest_points"], dtype=np.float64).reshape(-1, 2)
            if len(src) != len(dst):
                raise ValueError("source_points and dest_points differ in length")

        return cls(
            homography=H,
            source_size=(sw, sh),
            target_size=(tw, th),
            source_points=src,
            dest_points=dst,
            created_at=str(data.get("created_at", "")),
        )


def load_calibration(path: Union[str, Path]) -> Optional[CalibrationRecord]:
    """
    Returns the stored record, or None when no record exists.
    A record that exists but is unreadable raises CalibrationRecordCorrupt.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        record = CalibrationRecord.from_dict(data)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
        raise CalibrationRecordCorrupt(f"Calibration record {path} is corrupt: {e}") from e

    logger.info("Found existing calibration file %s", path)
    return record


def save_calibration(path: Union[str, Path], record: CalibrationRecord) -> None:
    """
    Write the record atomically: readers see either the previous file or the new one.
    """
    path = Path(path)
    payload = json.dumps(record.to_dict(), indent=2)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise CalibrationSaveError(f"Could not write calibration to {path}: {e}") from e

    logger.info("[calibration] Saved -> %s", path)
