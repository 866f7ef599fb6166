import logging
import sys
import time
from pathlib import Path
from typing import Dict, Optional

import cv2
import numpy as np

from .api.main import create_app
from .api.stream import FrameHub, StreamServer, TransportBindError
from .calibrate import CalibrationView
from .engine.calibration import CalibrationSession
from .engine.pipeline import CAMERA, PRIMARY, SECONDARY, CompositionMode, StreamingPipeline
from .pm.calib import CalibrationRecordCorrupt
from .pm.camera import Camera, CameraAcquisitionError, ThreadedCamera
from .pm.config import ConfigError, Settings, load_settings
from .vision.homography import HomographyEstimator
from .vision.points import CorrespondencePointStore
from .vision.warp import FrameWarper

logger = logging.getLogger(__name__)

WINDOW_NAME = "ProjWarp"
KEY_TAB = 9
KEY_ESC = 27


class FrameClock:
    """Sleep-based pacing to a fixed cycle rate."""
    def __init__(self, framerate: int):
        self.interval = 1.0 / max(1, int(framerate))
        self._next = time.perf_counter()

    def tick(self):
        self._next += self.interval
        delay = self._next - time.perf_counter()
        if delay > 0:
            time.sleep(delay)
        else:
            # running late, do not try to catch up
            self._next = time.perf_counter()


def load_target(path) -> Optional[np.ndarray]:
    img = cv2.imread(str(path))
    if img is None:
        logger.warning("Target image %s not found, overlay disabled", path)
    return img


class LiveApp:
    """One update loop: acquire, calibrate, warp, publish, preview."""

    def __init__(
        self,
        settings: Settings,
        cameras: Dict[str, Camera],
        session: CalibrationSession,
        pipeline: StreamingPipeline,
        hub: FrameHub,
        show_window: bool = True,
    ):
        self.settings = settings
        self.cameras = cameras
        self.session = session
        self.pipeline = pipeline
        self.hub = hub
        self.debug = settings.debug
        self.show_window = show_window
        self.running = True
        self.view = CalibrationView(
            session.store, pipeline.mode, pipeline.size, session.warper,
            settings.pick_radius_px, on_overlay_move=pipeline.move_overlay,
        )
        self._window_open = False

    def cycle(self) -> Optional[np.ndarray]:
        for name, cam in self.cameras.items():
            frame = cam.grab()
            if frame is not None:
                self.pipeline.deliver(name, frame)

        if self.session.update():
            logger.info("Switching to warped output")

        canvas = self.pipeline.step(overlay_visible=self.debug)
        self.hub.publish_status(
            calibration=self.session.state,
            pairs=self.session.store.count(),
            mode=self.pipeline.mode.value,
        )
        return canvas

    def _open_window(self):
        cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
        cv2.setMouseCallback(WINDOW_NAME, self.on_mouse)
        self._window_open = True

    def on_mouse(self, ev, x, y, flags, param=None):
        # the projector view shows no points; pointer input is debug-only
        if not self.debug:
            return
        self.view.on_mouse(ev, x, y, flags, param)

    def draw(self):
        if not self.show_window:
            return
        canvas = self.pipeline.last_canvas
        if canvas is None:
            cv2.waitKey(1)
            return
        if not self._window_open:
            self._open_window()

        if self.debug:
            fps = next(iter(self.cameras.values())).fps if self.cameras else None
            cv2.imshow(WINDOW_NAME, self.view.render(canvas, fps))
        else:
            # projector output: the warped source plane only
            cv2.imshow(WINDOW_NAME, canvas[:, self.pipeline.size[0]:])
        self.handle_key(cv2.waitKey(1) & 0xFF)

    def handle_key(self, key: int):
        if key == KEY_TAB:
            self.debug = not self.debug
            if not self.debug:
                self.view.pending = None
                self.view.release()
            logger.info("Debug preview %s", "on" if self.debug else "off")
        elif key == ord('r'):
            self.session.recalibrate()
            self.view.pending = None
        elif key in (ord('+'), ord('=')):
            self.pipeline.resize_overlay(self.settings.overlay_size_increment)
        elif key == ord('-'):
            self.pipeline.resize_overlay(-self.settings.overlay_size_increment)
        elif key in (ord('q'), KEY_ESC):
            self.running = False

    def run(self):
        clock = FrameClock(self.settings.framerate)
        print("Controls: Tab toggle preview | r recalibrate | +/- overlay size | q quit")
        while self.running:
            self.cycle()
            self.draw()
            clock.tick()


def open_cameras(settings: Settings, mode: CompositionMode) -> Dict[str, Camera]:
    if mode is CompositionMode.DUAL_CAMERA:
        cams = {
            PRIMARY: ThreadedCamera.from_settings(settings),
            SECONDARY: ThreadedCamera.from_settings(settings, secondary=True),
        }
    else:
        cams = {CAMERA: ThreadedCamera.from_settings(settings)}
    opened = {}
    try:
        for name, cam in cams.items():
            cam.open()
            opened[name] = cam
    except CameraAcquisitionError:
        for cam in opened.values():
            cam.release()
        raise
    return opened


def main(argv=None):
    try:
        settings = load_settings(argv[0] if argv else None)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("%s", e)
        return 2
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    mode = CompositionMode.from_flag(settings.use_secondary_camera_path)
    size = settings.frame_size
    calib_dir = Path(settings.calibration_dir)

    store = CorrespondencePointStore()
    warper = FrameWarper(size, settings.interpolation)
    session = CalibrationSession(store, HomographyEstimator(settings.condition_limit), warper, settings.calibration_path)
    try:
        session.startup(calib_dir / "left", calib_dir / "right", settings.board_pattern, settings.input_file_type)
    except CalibrationRecordCorrupt as e:
        logger.error("%s", e)
        return 2

    try:
        cameras = open_cameras(settings, mode)
    except CameraAcquisitionError as e:
        logger.error("%s", e)
        return 2

    hub = FrameHub.from_settings(settings)
    server = StreamServer(create_app(hub), settings.stream_host, settings.stream_port)
    try:
        server.start()
    except TransportBindError as e:
        logger.error("%s", e)
        for cam in cameras.values():
            cam.release()
        return 2

    target = load_target(settings.target_image) if mode is CompositionMode.TARGET_OVERLAY else None
    pipeline = StreamingPipeline(size, mode, warper, hub, target=target)
    app = LiveApp(settings, cameras, session, pipeline, hub)
    try:
        app.run()
    except KeyboardInterrupt:
        pass
    finally:
        for cam in cameras.values():
            cam.release()
        server.stop()
        cv2.destroyAllWindows()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
