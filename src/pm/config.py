"""
Runtime settings for ProjWarp.

Settings are read once at startup from a flat JSON object (``config/settings.json``)
and frozen.  Every component receives the ``Settings`` instance through its
constructor; nothing reads configuration from globals afterwards.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = "config"
SETTINGS_FILENAME = "settings.json"


class ConfigError(ValueError):
    """Raised when a settings file exists but cannot be used."""


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    debug: bool = True
    use_secondary_camera_path: bool = False
    width: int = 320
    height: int = 240
    framerate: int = 60
    log_level: str = "INFO"

    # camera tuning, ranges are hardware dependent:
    sharpness: int = 0              # -100 to 100
    contrast: int = 0               # -100 to 100
    brightness: int = 50            # 0 to 100
    iso: int = 300                  # 100 to 800
    exposure_mode: int = 0          # 0 off, 1 auto, 2 night ... 13 max
    exposure_compensation: int = 0  # -10 to 10
    shutter_speed: int = 0          # microseconds, 0 = auto
    camera_index: int = 0
    secondary_camera_index: int = 1
    camera_backend: str = "any"

    stream_host: str = "0.0.0.0"
    stream_port: int = 7111
    max_stream_connections: int = 5
    max_stream_bitrate: int = 512   # kbps
    max_stream_framerate: int = 30
    max_stream_queue: int = 10
    jpeg_quality: int = 80

    interpolation: Literal["nearest", "bilinear"] = "bilinear"
    pick_radius_px: float = 20.0
    condition_limit: float = 1e10

    calibration_dir: str = "calibration"
    calibration_file: str = "homography.json"
    input_file_type: str = "jpg"
    board_columns: int = 9
    board_rows: int = 6
    target_image: str = "calibration/target/target.png"
    overlay_size_increment: int = 10

    @property
    def frame_size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def board_pattern(self) -> tuple[int, int]:
        return self.board_columns, self.board_rows

    @property
    def calibration_path(self) -> Path:
        return Path(self.calibration_dir) / self.calibration_file


def default_settings_path() -> Path:
    # project root (../.. from pm/)
    return Path(__file__).resolve().parents[2] / CONFIG_DIRNAME / SETTINGS_FILENAME


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Load settings from a flat JSON object.

    A missing file is not an error: the built-in defaults are returned.
    A file that exists but holds invalid JSON or values raises ConfigError.
    """
    cfg_path = Path(path) if path is not None else default_settings_path()
    if not cfg_path.exists():
        logger.warning("Settings file %s not found, using defaults", cfg_path)
        return Settings()

    try:
        with open(cfg_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {cfg_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{cfg_path} must hold a flat JSON object")

    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {cfg_path}: {e}") from e

    logger.info("Loaded settings from %s", cfg_path)
    return settings
