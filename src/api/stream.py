"""
MJPEG transport for ProjWarp.

``FrameHub.send`` is called from the update loop.  It encodes the canvas to
JPEG once and publishes the resulting immutable ``bytes`` to every client
queue; HTTP handlers running on the server thread only ever see those bytes,
never the pipeline's arrays.  Each client has a bounded queue (oldest frame
dropped when full) and is paced by both a frame-rate and a bitrate cap.
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

import cv2
import numpy as np
import uvicorn

from ..pm.config import Settings

logger = logging.getLogger(__name__)

BOUNDARY = "frame"


class StreamCapacityError(RuntimeError):
    """All stream connection slots are taken."""


class TransportBindError(OSError):
    """The stream server could not bind its port."""


class StreamClient:
    """Per-connection queue and pacing state."""

    def __init__(self, client_id: int, max_queue: int, max_fps: int, max_kbps: int):
        self.id = client_id
        self.max_fps = max(1, int(max_fps))
        self.max_kbps = max(1, int(max_kbps))
        self._queue: Deque[bytes] = deque(maxlen=max(1, int(max_queue)))
        self._lock = threading.Lock()
        self.dropped = 0
        self.sent = 0

    def push(self, payload: bytes) -> None:
        with self._lock:
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(payload)

    def pop(self) -> Optional[bytes]:
        with self._lock:
            if not self._queue:
                return None
            return self._queue.popleft()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def delay_for(self, nbytes: int) -> float:
        """Seconds to wait after sending ``nbytes`` to stay under both caps."""
        frame_interval = 1.0 / self.max_fps
        bitrate_interval = (nbytes * 8) / (self.max_kbps * 1000.0)
        return max(frame_interval, bitrate_interval)


class FrameHub:
    """Fan-out of encoded frames to a bounded set of stream clients."""

    def __init__(
        self,
        max_connections: int = 5,
        max_bitrate: int = 512,
        max_framerate: int = 30,
        max_queue: int = 10,
        jpeg_quality: int = 80,
    ):
        self.max_connections = int(max_connections)
        self.max_bitrate = int(max_bitrate)
        self.max_framerate = int(max_framerate)
        self.max_queue = int(max_queue)
        self.jpeg_quality = int(jpeg_quality)

        self._lock = threading.Lock()
        self._clients: Dict[int, StreamClient] = {}
        self._ids = itertools.count(1)
        self._latest: Optional[bytes] = None
        self.frames_published = 0
        self.status: Dict[str, object] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "FrameHub":
        return cls(
            max_connections=settings.max_stream_connections,
            max_bitrate=settings.max_stream_bitrate,
            max_framerate=settings.max_stream_framerate,
            max_queue=settings.max_stream_queue,
            jpeg_quality=settings.jpeg_quality,
        )

    # ---------- producer side (update loop) ----------

    def encode(self, image: np.ndarray) -> bytes:
        ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise ValueError("Failed to encode frame as JPEG")
        return buffer.tobytes()

    def send(self, image: np.ndarray) -> None:
        """Publish a frame; never blocks on clients."""
        payload = self.encode(image)
        with self._lock:
            self._latest = payload
            self.frames_published += 1
            clients: List[StreamClient] = list(self._clients.values())
        for client in clients:
            client.push(payload)

    def publish_status(self, **status: object) -> None:
        with self._lock:
            self.status = dict(status)

    # ---------- consumer side (server thread) ----------

    def latest(self) -> Optional[bytes]:
        with self._lock:
            return self._latest

    def register(self) -> StreamClient:
        with self._lock:
            if len(self._clients) >= self.max_connections:
                raise StreamCapacityError(
                    f"stream connection limit reached ({self.max_connections})"
                )
            client = StreamClient(next(self._ids), self.max_queue, self.max_framerate, self.max_bitrate)
            self._clients[client.id] = client
        logger.info("Stream client %d connected (%d/%d)", client.id, self.client_count, self.max_connections)
        return client

    def unregister(self, client: StreamClient) -> None:
        with self._lock:
            if self._clients.pop(client.id, None) is None:
                return
        logger.info(
            "Stream client %d disconnected (sent=%d dropped=%d)", client.id, client.sent, client.dropped
        )

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "clients": len(self._clients),
                "max_clients": self.max_connections,
                "frames_published": self.frames_published,
                **self.status,
            }


def mjpeg_part(payload: bytes) -> bytes:
    return (
        b"--" + BOUNDARY.encode() + b"\r\n"
        b"Content-Type: image/jpeg\r\n"
        + f"Content-Length: {len(payload)}\r\n\r\n".encode()
        + payload
        + b"\r\n"
    )


class StreamServer:
    """
    Runs uvicorn on a daemon thread.  The listening socket is bound in
    ``start()`` so a busy port fails the caller immediately.
    """

    def __init__(self, app, host: str = "0.0.0.0", port: int = 7111):
        self.app = app
        self.host = host
        self.port = int(port)
        self._sock: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(128)
        except OSError as e:
            sock.close()
            raise TransportBindError(e.errno, f"Cannot bind stream server to {self.host}:{self.port}: {e}") from e
        sock.set_inheritable(True)
        return sock

    def start(self) -> None:
        self._sock = self._bind()
        self.port = self._sock.getsockname()[1]
        config = uvicorn.Config(self.app, log_level="warning", access_log=False)
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run, kwargs={"sockets": [self._sock]}, daemon=True
        )
        self._thread.start()
        logger.info("Streaming on http://%s:%d/", self.host, self.port)

    def stop(self, timeout: float = 2.0) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
