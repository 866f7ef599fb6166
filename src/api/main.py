"""
FastAPI application for ProjWarp streaming.

Routes:

    GET /          companion viewer page (static/index.html)
    GET /static/*  viewer assets
    GET /health    liveness
    GET /status    stream clients, frames published, calibration state
    GET /frame     latest published frame as a single JPEG
    GET /stream    MJPEG stream (multipart/x-mixed-replace)

The live application builds the app with ``create_app(hub)`` and serves it
through ``StreamServer``.  For standalone use:

    uvicorn src.api.main:app --port 7111
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import FileResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles

from .stream import BOUNDARY, FrameHub, StreamCapacityError, StreamClient, mjpeg_part

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"
POLL_INTERVAL = 0.005


async def _mjpeg(hub: FrameHub, client: StreamClient) -> AsyncIterator[bytes]:
    try:
        while True:
            payload = client.pop()
            if payload is None:
                await asyncio.sleep(POLL_INTERVAL)
                continue
            yield mjpeg_part(payload)
            client.sent += 1
            await asyncio.sleep(client.delay_for(len(payload)))
    finally:
        hub.unregister(client)


def create_app(hub: Optional[FrameHub] = None, static_dir: Path = STATIC_DIR) -> FastAPI:
    hub = hub if hub is not None else FrameHub()
    app = FastAPI(title="ProjWarp Stream", version="0.1.0")
    app.state.hub = hub

    if static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    @app.get("/", include_in_schema=False)
    def index() -> FileResponse:
        page = static_dir / "index.html"
        if not page.exists():
            raise HTTPException(status_code=404, detail="viewer page not installed")
        return FileResponse(page)

    @app.get("/health", tags=["System"])
    def health_check() -> Dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.get("/status", tags=["Stream"])
    def status() -> Dict[str, Any]:
        return hub.snapshot()

    @app.get("/frame", tags=["Stream"])
    def latest_frame() -> Response:
        """Latest published frame; 404 until the first one is sent."""
        payload = hub.latest()
        if payload is None:
            raise HTTPException(status_code=404, detail="no frame published yet")
        return Response(content=payload, media_type="image/jpeg", headers={"Cache-Control": "no-cache"})

    @app.get("/stream", tags=["Stream"])
    def video_stream() -> StreamingResponse:
        try:
            client = hub.register()
        except StreamCapacityError as e:
            logger.warning("Rejected stream client: %s", e)
            raise HTTPException(status_code=503, detail=str(e))

        # prime with the latest frame so new viewers do not wait a full cycle
        latest = hub.latest()
        if latest is not None:
            client.push(latest)

        # releases the slot even if the body never starts
        cleanup = BackgroundTasks()
        cleanup.add_task(hub.unregister, client)

        return StreamingResponse(
            _mjpeg(hub, client),
            media_type=f"multipart/x-mixed-replace; boundary={BOUNDARY}",
            background=cleanup,
            headers={
                "Cache-Control": "no-cache, no-store, must-revalidate",
                "Pragma": "no-cache",
                "Connection": "close",
            },
        )

    return app


app = create_app()
