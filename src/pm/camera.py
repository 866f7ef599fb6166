# pm/camera.py
from __future__ import annotations
import logging
import time
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .config import Settings

logger = logging.getLogger(__name__)

_BACKENDS = {
    "any": 0,
    "dshow": cv2.CAP_DSHOW,
    "msmf": cv2.CAP_MSMF,
    "v4l2": cv2.CAP_V4L2,
    "avfoundation": cv2.CAP_AVFOUNDATION,
}


class CameraAcquisitionError(RuntimeError):
    """Camera could not be opened or primed."""


@dataclass
class Frame:
    """One acquired image with its sequence id and capture time."""
    image: np.ndarray
    seq: int
    timestamp: float = field(default_factory=time.perf_counter)

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.image.ndim == 2 else int(self.image.shape[2])


@dataclass(frozen=True)
class CameraTuning:
    sharpness: int = 0
    contrast: int = 0
    brightness: int = 50
    iso: int = 300
    exposure_mode: int = 0
    exposure_compensation: int = 0
    shutter_speed: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CameraTuning":
        return cls(
            sharpness=settings.sharpness,
            contrast=settings.contrast,
            brightness=settings.brightness,
            iso=settings.iso,
            exposure_mode=settings.exposure_mode,
            exposure_compensation=settings.exposure_compensation,
            shutter_speed=settings.shutter_speed,
        )

    def properties(self) -> list[tuple[int, float]]:
        # drivers silently ignore what they do not support
        props = [
            (cv2.CAP_PROP_SHARPNESS, float(self.sharpness)),
            (cv2.CAP_PROP_CONTRAST, float(self.contrast)),
            (cv2.CAP_PROP_BRIGHTNESS, float(self.brightness)),
            (cv2.CAP_PROP_ISO_SPEED, float(self.iso)),
            (cv2.CAP_PROP_GAIN, float(self.exposure_compensation)),
        ]
        if self.exposure_mode:
            props.append((cv2.CAP_PROP_AUTO_EXPOSURE, float(self.exposure_mode)))
        if self.shutter_speed > 0:
            props.append((cv2.CAP_PROP_EXPOSURE, float(self.shutter_speed)))
        return props


class Camera:
    """
    Non-threaded camera (baseline). Use ThreadedCamera for low-latency capture.
    Also measures runtime FPS using EMA of inter-frame times.
    """
    def __init__(
        self,
        index: Union[int, str] = 0,
        width: int = 320,
        height: int = 240,
        fps: int = 60,
        backend_name: str = "any",
        tuning: Optional[CameraTuning] = None,
        prefer_mjpg: bool = True,
        set_buffer_sz: int = 1,  # ask driver for small buffer where supported
    ):
        self.index = 0 if index in (None, "auto") else int(index)
        self.req_width = int(width)
        self.req_height = int(height)
        self.req_fps = int(fps)
        self.tuning = tuning
        self.prefer_mjpg = bool(prefer_mjpg)
        self.set_buffer_sz = int(set_buffer_sz)

        self.backend = _BACKENDS.get(backend_name.lower(), 0)
        self.cap: Optional[cv2.VideoCapture] = None

        self._seq = 0
        self._last_grabbed = 0
        self._last_ts: Optional[float] = None
        self._fps_ema: float = 0.0
        self._ema_alpha = 0.15

        self.actual_width = None
        self.actual_height = None
        self.actual_fps_reported = None

    @classmethod
    def from_settings(cls, settings: Settings, secondary: bool = False, **kwargs) -> "Camera":
        index = settings.secondary_camera_index if secondary else settings.camera_index
        return cls(
            index=index,
            width=settings.width,
            height=settings.height,
            fps=settings.framerate,
            backend_name=settings.camera_backend,
            tuning=CameraTuning.from_settings(settings),
            **kwargs,
        )

    def open(self):
        self.cap = cv2.VideoCapture(self.index, self.backend)
        if not self.cap.isOpened():
            self.cap = None
            raise CameraAcquisitionError(f"Failed to open camera {self.index}")

        # Prefer MJPG for USB cams
        if self.prefer_mjpg:
            self.cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))

        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, float(self.set_buffer_sz))

        # Request properties
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(self.req_width))
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(self.req_height))
        self.cap.set(cv2.CAP_PROP_FPS, float(self.req_fps))
        if self.tuning is not None:
            for prop, value in self.tuning.properties():
                self.cap.set(prop, value)

        # Prime stream
        ok, _ = self.cap.read()
        if not ok:
            self.release()
            raise CameraAcquisitionError(f"Failed to read from camera {self.index}")

        # Read back actuals
        self.actual_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        self.actual_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        self.actual_fps_reported = float(self.cap.get(cv2.CAP_PROP_FPS) or 0.0)

        backend_name = next((k for k, v in _BACKENDS.items() if v == self.backend), "any")
        logger.info(
            "Camera %s requested %dx%d@%d (%s), actual %dx%d@%.1f",
            self.index, self.req_width, self.req_height, self.req_fps, backend_name,
            self.actual_width, self.actual_height, self.actual_fps_reported,
        )

        self._last_ts = time.perf_counter()
        self._fps_ema = 0.0

    def _tick(self, now: float):
        if self._last_ts is not None:
            dt = now - self._last_ts
            if dt > 0:
                inst_fps = 1.0 / dt
                self._fps_ema = inst_fps if self._fps_ema <= 0 else (
                    self._ema_alpha * inst_fps + (1 - self._ema_alpha) * self._fps_ema
                )
        self._last_ts = now

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        if self.cap is None:
            return False, None
        ok, frame = self.cap.read()
        if ok and frame is not None:
            self._tick(time.perf_counter())
            self._seq += 1
        return ok, frame

    def grab(self) -> Optional[Frame]:
        """
        Return a new Frame, or None when no new frame is available.
        A failed read is logged and reported as None; callers keep
        their last good frame.
        """
        ok, image = self.read()
        if not ok or image is None:
            logger.warning("Camera %s: frame read failed", self.index)
            return None
        if self._seq == self._last_grabbed:
            return None
        self._last_grabbed = self._seq
        return Frame(image=image, seq=self._seq)

    @property
    def fps(self) -> float:
        if self._fps_ema > 0:
            return float(self._fps_ema)
        if self.actual_fps_reported and self.actual_fps_reported > 0:
            return float(self.actual_fps_reported)
        return 0.0

    def release(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class ThreadedCamera(Camera):
    """
    Background thread continuously reads frames to keep the buffer fresh.
    The main thread always gets the MOST RECENT frame (older frames are dropped).
    ``grab()`` returns None until the reader thread has produced a newer frame,
    which is the per-source "new frame" signal the update loop waits on.
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._latest: Optional[np.ndarray] = None

    def open(self):
        super().open()
        self._stop.clear()
        self._thread = threading.Thread(target=self._reader_loop, daemon=True)
        self._thread.start()

    def _reader_loop(self):
        while not self._stop.is_set() and self.cap is not None:
            ok, frame = self.cap.read()
            if not ok or frame is None:
                time.sleep(0.001)
                continue
            self._tick(time.perf_counter())
            # keep only the newest frame
            with self._lock:
                self._latest = frame
                self._seq += 1

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        # return the newest available frame (may be the same as last call if processing slower)
        with self._lock:
            if self._latest is None:
                return False, None
            frame = self._latest.copy()
        return True, frame

    def grab(self) -> Optional[Frame]:
        with self._lock:
            if self._latest is None or self._seq == self._last_grabbed:
                return None
            self._last_grabbed = self._seq
            return Frame(image=self._latest.copy(), seq=self._seq)

    def release(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=0.5)
            self._thread = None
        super().release()
