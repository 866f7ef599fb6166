import logging
import sys
from pathlib import Path
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from .engine.calibration import READY, CalibrationSession
from .engine.pipeline import CompositionMode
from .pm.calib import CalibrationRecordCorrupt
from .pm.config import ConfigError, load_settings
from .vision.board import list_calibration_pairs
from .vision.homography import HomographyEstimator
from .vision.points import PICK_RADIUS_PX, CorrespondencePointStore, Plane
from .vision.warp import FrameWarper

logger = logging.getLogger(__name__)

DEST_COLOR = (0, 0, 255)
SOURCE_COLOR = (255, 255, 0)
PENDING_COLOR = (0, 255, 255)
LINK_COLOR = (128, 128, 128)

# ---------- UI helpers ----------

def resize_with_scale(img, max_w=1600):
    h, w = img.shape[:2]
    if w <= max_w:
        return img.copy(), 1.0
    s = max_w / float(w)
    return cv2.resize(img, (int(w*s), int(h*s)), interpolation=cv2.INTER_AREA), s

def draw_hud(img, text: str, org=(10, 20)):
    cv2.putText(img, text, org, cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255,255,255), 1, cv2.LINE_AA)


class CalibrationView:
    """
    Point placement and inspection over a side-by-side canvas.

    Left half is the destination plane, right half the source plane, each
    ``size`` pixels.  Pointer handling:

    * press near a point selects it (either half), drag moves it, release drops it
    * target overlay mode: press on empty space in the left half moves the overlay
      (shift+press places a point instead)
    * press on empty space places half a pair; a press in the other half
      completes it, so the store only ever receives whole pairs

    Editing stops once the homography is ready; the view then draws source
    points through the warp so they can be checked against their partners.
    """
    def __init__(
        self,
        store: CorrespondencePointStore,
        mode: CompositionMode,
        size: Tuple[int, int],
        warper: Optional[FrameWarper] = None,
        radius: float = PICK_RADIUS_PX,
        on_overlay_move: Optional[Callable[[int, int], None]] = None,
        scale: float = 1.0,
    ):
        self.store = store
        self.mode = CompositionMode(mode)
        self.size = (int(size[0]), int(size[1]))
        self.warper = warper
        self.radius = float(radius)
        self.on_overlay_move = on_overlay_move
        self.scale = float(scale)
        self.pending: Optional[Tuple[Plane, Tuple[float, float]]] = None
        self._moving_overlay = False

    @property
    def editable(self) -> bool:
        return self.warper is None or not self.warper.is_ready

    def _view_to_plane(self, x, y) -> Tuple[Plane, Tuple[float, float]]:
        w, h = self.size
        cx = x / self.scale
        cy = min(max(y / self.scale, 0.0), h - 1.0)
        if cx < w:
            return Plane.DEST, (max(cx, 0.0), cy)
        return Plane.SOURCE, (min(cx - w, w - 1.0), cy)

    # ---------- pointer events ----------

    def press(self, x, y, shift: bool = False):
        plane, pt = self._view_to_plane(x, y)
        overlay_plane = self.mode is CompositionMode.TARGET_OVERLAY and plane is Plane.DEST

        if self.editable and self.store.select_near(pt, plane, self.radius):
            return
        if overlay_plane and not shift:
            self._moving_overlay = True
            self._move_overlay(pt)
            return
        if not self.editable:
            return

        if self.pending is None or self.pending[0] is plane:
            self.pending = (plane, pt)
            return
        other_plane, other_pt = self.pending
        src, dst = (pt, other_pt) if plane is Plane.SOURCE else (other_pt, pt)
        index = self.store.add_pair(src, dst)
        self.pending = None
        logger.info("Added correspondence %d: %s -> %s", index, src, dst)

    def drag(self, x, y):
        plane, pt = self._view_to_plane(x, y)
        if self._moving_overlay:
            self._move_overlay(pt)
            return
        sel = self.store.selected
        if sel is None:
            return
        if plane is not sel.plane:
            # keep the point inside its own half
            w = self.size[0]
            pt = (w - 1.0, pt[1]) if sel.plane is Plane.DEST else (0.0, pt[1])
        self.store.move_selected(pt)

    def release(self, x=None, y=None):
        self.store.release()
        self._moving_overlay = False

    def _move_overlay(self, pt):
        if self.on_overlay_move is not None:
            self.on_overlay_move(int(round(pt[0])), int(round(pt[1])))

    def on_mouse(self, ev, x, y, flags, param=None):
        """cv2.setMouseCallback adapter."""
        if ev == cv2.EVENT_LBUTTONDOWN:
            self.press(x, y, shift=bool(flags & cv2.EVENT_FLAG_SHIFTKEY))
        elif ev == cv2.EVENT_MOUSEMOVE and flags & cv2.EVENT_FLAG_LBUTTON:
            self.drag(x, y)
        elif ev == cv2.EVENT_LBUTTONUP:
            self.release(x, y)

    # ---------- drawing ----------

    def _to_view(self, pt, plane: Plane) -> Tuple[int, int]:
        x, y = pt
        if plane is Plane.SOURCE:
            x += self.size[0]
        return int(round(x * self.scale)), int(round(y * self.scale))

    def render(self, canvas: np.ndarray, fps: Optional[float] = None) -> np.ndarray:
        """Return a copy of ``canvas`` with points, pair links and status drawn on it."""
        view = canvas.copy()
        dst = self.store.points(Plane.DEST)
        src = self.store.points(Plane.SOURCE)
        if src and self.warper is not None and self.warper.is_ready:
            src = [tuple(p) for p in self.warper.map_points(src)]

        for s, d in zip(src, dst):
            cv2.line(view, self._to_view(d, Plane.DEST), self._to_view(s, Plane.SOURCE), LINK_COLOR, 1, cv2.LINE_AA)
        for pts, plane, color in ((dst, Plane.DEST, DEST_COLOR), (src, Plane.SOURCE, SOURCE_COLOR)):
            for p in pts:
                c = self._to_view(p, plane)
                cv2.circle(view, c, 10, color, 1, cv2.LINE_AA)
                cv2.circle(view, c, 1, color, -1)
        if self.pending is not None:
            plane, p = self.pending
            cv2.circle(view, self._to_view(p, plane), 10, PENDING_COLOR, 2, cv2.LINE_AA)

        state = "ready" if not self.editable else "collecting"
        text = f"{state}  pairs: {len(self.store)}"
        if fps is not None:
            text = f"{int(fps)} fps  " + text
        draw_hud(view, text)
        return view


# ---------- Offline calibration flow ----------

def preview_blend(dest_img: np.ndarray, source_img: np.ndarray, warper: FrameWarper) -> np.ndarray:
    warped = warper.apply(source_img)
    if warped.shape[:2] != dest_img.shape[:2]:
        warped = cv2.resize(warped, (dest_img.shape[1], dest_img.shape[0]))
    return cv2.addWeighted(dest_img, 1.0, warped, 0.5, 0)


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = load_settings(argv[0] if argv else None)
    except ConfigError as e:
        logger.error("%s", e)
        return 2

    calib_dir = Path(settings.calibration_dir)
    pairs = list_calibration_pairs(calib_dir / "left", calib_dir / "right", settings.input_file_type)
    if not pairs:
        print(f"No image pairs found under {calib_dir}/left and {calib_dir}/right.")
        return 1

    dest_img = cv2.imread(str(pairs[0][0]))
    source_img = cv2.imread(str(pairs[0][1]))
    if dest_img is None or source_img is None:
        print(f"Could not read {pairs[0][0]} / {pairs[0][1]}")
        return 1
    size = (dest_img.shape[1], dest_img.shape[0])
    source_img = cv2.resize(source_img, size) if source_img.shape[:2] != dest_img.shape[:2] else source_img

    store = CorrespondencePointStore()
    warper = FrameWarper(size, settings.interpolation)
    session = CalibrationSession(
        store, HomographyEstimator(settings.condition_limit), warper,
        settings.calibration_path, source_size=size, target_size=size,
    )
    try:
        session.startup(calib_dir / "left", calib_dir / "right", settings.board_pattern, settings.input_file_type)
    except CalibrationRecordCorrupt as e:
        logger.error("%s", e)
        return 2
    if session.state == READY:
        print(f"Calibration already exists at {settings.calibration_path}; delete it to recalibrate.")
        return 0

    base = np.hstack([dest_img, source_img])
    _, scale = resize_with_scale(base)
    view = CalibrationView(store, CompositionMode.DUAL_CAMERA, size, warper, settings.pick_radius_px, scale=scale)
    title = "Calibrate - Correspondences"
    cv2.namedWindow(title, cv2.WINDOW_NORMAL)
    cv2.setMouseCallback(title, view.on_mouse)
    print("Controls: click L then R to add a pair, drag to move | Enter=fit+save  r=reset  q=cancel")

    while True:
        if warper.is_ready:
            canvas = np.hstack([preview_blend(dest_img, source_img, warper), warper.apply(source_img)])
        else:
            canvas = base
        shown = view.render(resize_with_scale(canvas)[0])
        msg = session.last_error or "Enter=fit+save  r=reset  q=cancel"
        draw_hud(shown, msg, (10, 40))
        cv2.imshow(title, shown)
        k = cv2.waitKey(15) & 0xFF
        if k in (13, 10):
            if session.update():
                print(f"[calibration] Saved -> {settings.calibration_path}")
        elif k == ord('r'):
            session.recalibrate()
            view.pending = None
        elif k in (ord('q'), 27):
            break

    cv2.destroyAllWindows()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
