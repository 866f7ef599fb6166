"""
Tests for the streaming HTTP surface and the frame hub behind it.

Endpoints are exercised with FastAPI's TestClient; the never-ending MJPEG
body is not read, only the capacity gate in front of it.
"""

import asyncio
import socket

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

from src.api.main import app, create_app
from src.api.stream import (
    FrameHub,
    StreamCapacityError,
    StreamClient,
    StreamServer,
    TransportBindError,
    mjpeg_part,
)


def _image(value: int = 128) -> np.ndarray:
    return np.full((24, 64, 3), value, dtype=np.uint8)


def test_health_check() -> None:
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_viewer_page_is_served() -> None:
    client = TestClient(app)
    response = client.get("/")
    assert response.status_code == 200
    assert "/stream" in response.text
    js = client.get("/static/js/main.js")
    assert js.status_code == 200


def test_frame_before_and_after_send() -> None:
    hub = FrameHub()
    client = TestClient(create_app(hub))
    assert client.get("/frame").status_code == 404

    hub.send(_image(200))
    response = client.get("/frame")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    decoded = cv2.imdecode(np.frombuffer(response.content, np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (24, 64, 3)
    assert abs(int(decoded.mean()) - 200) <= 2


def test_status_reports_hub_state() -> None:
    hub = FrameHub(max_connections=3)
    hub.send(_image())
    hub.publish_status(calibration="collecting", pairs=2)
    data = TestClient(create_app(hub)).get("/status").json()
    assert data["frames_published"] == 1
    assert data["max_clients"] == 3
    assert data["calibration"] == "collecting"


def test_stream_rejects_clients_over_capacity() -> None:
    hub = FrameHub(max_connections=1)
    hub.register()
    response = TestClient(create_app(hub)).get("/stream")
    assert response.status_code == 503


def test_register_enforces_connection_cap() -> None:
    hub = FrameHub(max_connections=2)
    a = hub.register()
    hub.register()
    with pytest.raises(StreamCapacityError):
        hub.register()
    hub.unregister(a)
    hub.register()
    assert hub.client_count == 2


def test_send_fans_out_and_bounds_each_queue() -> None:
    hub = FrameHub(max_queue=3)
    a = hub.register()
    b = hub.register()
    for i in range(5):
        hub.send(_image(i * 40))
    assert len(a) == 3 and len(b) == 3
    assert a.dropped == 2
    # oldest frames were dropped; the newest is last
    payloads = [a.pop() for _ in range(3)]
    assert payloads[-1] == hub.latest()
    assert a.pop() is None
    assert len(b) == 3


def test_published_bytes_do_not_track_the_source_array() -> None:
    hub = FrameHub()
    img = _image(10)
    hub.send(img)
    before = hub.latest()
    img[:] = 250
    assert hub.latest() == before


def test_client_pacing_honours_both_caps() -> None:
    c = StreamClient(1, max_queue=10, max_fps=30, max_kbps=512)
    assert c.delay_for(100) == pytest.approx(1 / 30)
    # 64 KiB at 512 kbps takes about one second
    assert c.delay_for(64_000) == pytest.approx(64_000 * 8 / 512_000)


def test_mjpeg_part_framing() -> None:
    part = mjpeg_part(b"abc")
    assert part.startswith(b"--frame\r\nContent-Type: image/jpeg\r\n")
    assert b"Content-Length: 3\r\n\r\nabc\r\n" in part


def test_bind_failure_is_raised_at_start() -> None:
    busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    busy.bind(("127.0.0.1", 0))
    busy.listen(1)
    try:
        port = busy.getsockname()[1]
        server = StreamServer(create_app(FrameHub()), "127.0.0.1", port)
        with pytest.raises(TransportBindError):
            server.start()
    finally:
        busy.close()


def test_stream_slot_is_released_without_reading_the_body() -> None:
    hub = FrameHub(max_connections=1)
    app = create_app(hub)
    endpoint = next(r.endpoint for r in app.routes if getattr(r, "path", None) == "/stream")

    response = endpoint()
    assert hub.client_count == 1
    # the body generator is never iterated; the response cleanup still runs
    asyncio.run(response.background())
    assert hub.client_count == 0
    hub.register()
