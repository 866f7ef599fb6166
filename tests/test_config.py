"""
Tests for settings loading.
"""

import json

import pytest
from pydantic import ValidationError

from src.pm.config import ConfigError, Settings, load_settings


def test_missing_file_gives_defaults(tmp_path) -> None:
    s = load_settings(tmp_path / "settings.json")
    assert s == Settings()
    assert s.stream_port == 7111
    assert s.max_stream_connections == 5
    assert s.max_stream_bitrate == 512
    assert s.max_stream_framerate == 30
    assert s.max_stream_queue == 10
    assert s.framerate == 60
    assert s.interpolation == "bilinear"
    assert s.pick_radius_px == 20.0


def test_flat_table_overrides_defaults(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"width": 640, "use_secondary_camera_path": True, "unknown": 1}), encoding="utf-8")
    s = load_settings(path)
    assert s.frame_size == (640, 240)
    assert s.use_secondary_camera_path is True


def test_settings_are_immutable() -> None:
    s = Settings()
    with pytest.raises(ValidationError):
        s.width = 10


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", "{\"width\": \"wide\"}", "{\"interpolation\": \"cubic\"}"])
def test_malformed_file_raises(tmp_path, content: str) -> None:
    path = tmp_path / "settings.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(path)


def test_shipped_settings_file_loads() -> None:
    s = load_settings()
    assert s.stream_port == 7111
