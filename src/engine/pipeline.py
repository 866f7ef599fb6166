"""
Core orchestration for ProjWarp streaming.

Each cycle the application delivers whatever new camera frames arrived; the
pipeline composes a side-by-side canvas only once every required source has
a fresh frame, warps the source half with the current homography and hands
the result to the transport.

Canvas layout (``2 * width`` x ``height``):

* left half  - destination plane: the primary camera (dual camera mode) or
  the target overlay (target overlay mode)
* right half - source plane: the secondary camera (dual camera mode) or the
  only camera (target overlay mode), warped when a homography is ready
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple

import cv2
import numpy as np

from ..pm.camera import Frame
from ..vision.warp import FrameWarper

logger = logging.getLogger(__name__)

PRIMARY = "primary"
SECONDARY = "secondary"
CAMERA = "camera"


class CompositionMode(str, Enum):
    TARGET_OVERLAY = "target_overlay"
    DUAL_CAMERA = "dual_camera"

    @classmethod
    def from_flag(cls, use_secondary_camera: bool) -> "CompositionMode":
        return cls.DUAL_CAMERA if use_secondary_camera else cls.TARGET_OVERLAY


class SourceState(str, Enum):
    IDLE = "idle"            # nothing delivered yet
    PENDING = "pending"      # waiting for a frame newer than the last push
    READY = "ready"          # fresh frame held for the next composition
    CONSUMED = "consumed"    # frame went into a pushed canvas


class Transport(Protocol):
    def send(self, image: np.ndarray) -> None: ...


@dataclass
class SourceSlot:
    name: str
    state: SourceState = SourceState.IDLE
    frame: Optional[Frame] = None

    def begin_cycle(self) -> None:
        if self.state is SourceState.CONSUMED:
            self.state = SourceState.PENDING

    def deliver(self, frame: Frame) -> None:
        self.frame = frame
        self.state = SourceState.READY

    def consume(self) -> Frame:
        if self.state is not SourceState.READY or self.frame is None:
            raise RuntimeError(f"source {self.name!r} has no ready frame")
        self.state = SourceState.CONSUMED
        return self.frame


def to_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image


def fit_to(image: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    image = to_bgr(image)
    h, w = image.shape[:2]
    if (w, h) == tuple(size):
        return image
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA)


def paste_centered(canvas: np.ndarray, image: np.ndarray, center: Tuple[int, int]) -> None:
    """Draw ``image`` on ``canvas`` centred at ``center``, clipped to the canvas."""
    ch, cw = canvas.shape[:2]
    ih, iw = image.shape[:2]
    x0 = int(center[0]) - iw // 2
    y0 = int(center[1]) - ih // 2
    cx0, cy0 = max(0, x0), max(0, y0)
    cx1, cy1 = min(cw, x0 + iw), min(ch, y0 + ih)
    if cx0 >= cx1 or cy0 >= cy1:
        return
    canvas[cy0:cy1, cx0:cx1] = image[cy0 - y0:cy1 - y0, cx0 - x0:cx1 - x0]


class StreamingPipeline:
    """Compose, warp and publish one canvas per completed set of source frames."""

    def __init__(
        self,
        size: Tuple[int, int],
        mode: CompositionMode,
        warper: FrameWarper,
        transport: Transport,
        target: Optional[np.ndarray] = None,
        overlay_width: Optional[int] = None,
    ) -> None:
        self.size = (int(size[0]), int(size[1]))
        self.mode = CompositionMode(mode)
        self.warper = warper
        self.transport = transport

        names = (PRIMARY, SECONDARY) if self.mode is CompositionMode.DUAL_CAMERA else (CAMERA,)
        self.sources: Dict[str, SourceSlot] = {n: SourceSlot(n) for n in names}

        w, h = self.size
        self._target_orig = None if target is None else to_bgr(target)
        self._target: Optional[np.ndarray] = None
        self.overlay_offset = (w // 2, h // 2)
        self.overlay_width = int(overlay_width) if overlay_width else w // 2
        if self._target_orig is not None:
            self.resize_overlay(0)

        self.frames_published = 0
        self.last_canvas: Optional[np.ndarray] = None
        self.last_overlay: Optional[np.ndarray] = None

    # ---------- interactive overlay state ----------

    def move_overlay(self, x: int, y: int) -> None:
        self.overlay_offset = (int(x), int(y))

    def resize_overlay(self, delta: int) -> None:
        """Change overlay width by ``delta`` pixels keeping the aspect ratio."""
        if self._target_orig is None:
            return
        self.overlay_width = max(1, self.overlay_width + int(delta))
        th, tw = self._target_orig.shape[:2]
        new_h = max(1, int(round(self.overlay_width * th / float(tw))))
        self._target = cv2.resize(self._target_orig, (self.overlay_width, new_h), interpolation=cv2.INTER_AREA)

    def render_overlay(self) -> np.ndarray:
        w, h = self.size
        canvas = np.zeros((h, w, 3), dtype=np.uint8)
        if self._target is not None:
            paste_centered(canvas, self._target, self.overlay_offset)
        return canvas

    # ---------- per-cycle flow ----------

    def deliver(self, name: str, frame: Frame) -> None:
        self.sources[name].deliver(frame)

    @property
    def ready(self) -> bool:
        return all(s.state is SourceState.READY for s in self.sources.values())

    def compose(self, overlay_visible: bool = True) -> np.ndarray:
        """Build the canvas from the currently held frames (no state change)."""
        w, h = self.size
        canvas = np.zeros((h, 2 * w, 3), dtype=np.uint8)
        if self.mode is CompositionMode.DUAL_CAMERA:
            canvas[:, :w] = fit_to(self.sources[PRIMARY].frame.image, self.size)
            canvas[:, w:] = fit_to(self.sources[SECONDARY].frame.image, self.size)
        else:
            overlay = self.render_overlay() if overlay_visible else np.zeros((h, w, 3), dtype=np.uint8)
            self.last_overlay = overlay
            canvas[:, :w] = overlay
            canvas[:, w:] = fit_to(self.sources[CAMERA].frame.image, self.size)
        # source half is warped in place after composition
        canvas[:, w:] = fit_to(self.warper.apply(canvas[:, w:].copy()), self.size)
        return canvas

    def step(self, overlay_visible: bool = True) -> Optional[np.ndarray]:
        """
        Publish one canvas if every source has a fresh frame.

        Returns the published canvas, or None when some source is still
        pending and nothing was sent this cycle.
        """
        if not self.ready:
            return None

        canvas = self.compose(overlay_visible)
        for slot in self.sources.values():
            slot.consume()

        self.transport.send(canvas)
        self.frames_published += 1
        self.last_canvas = canvas
        for slot in self.sources.values():
            slot.begin_cycle()
        return canvas
