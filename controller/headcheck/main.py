"""FastAPI entry-point for the headcheck controller."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from .config import Settings, get_settings
from .logging_config import configure_logging
from .session_manager import SessionHost

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(
    settings.log_level,
    settings.log_directory,
    settings.log_retention_days,
    liveness_level=settings.log_liveness_level,
)
app = FastAPI(title="headcheck-controller", version="0.1.0")
host = SessionHost(settings=settings)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Validation error in %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    await host.start()
    logger.info("Application started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await host.shutdown()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception("Error during shutdown: %s", e)


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "mode": host.mode.value, "liveness": host.status.value})


@app.get("/state")
async def current_state() -> JSONResponse:
    return JSONResponse(host.snapshot())


@app.post("/camera/start")
async def camera_start() -> JSONResponse:
    """Start or restart the camera and a fresh liveness check."""
    await host.start_camera()
    return JSONResponse(host.snapshot())


@app.post("/camera/stop")
async def camera_stop() -> JSONResponse:
    await host.stop_camera()
    return JSONResponse(host.snapshot())


@app.post("/upload")
async def upload_image(request: Request) -> JSONResponse:
    """Review a raw image body (JPEG/PNG); leaves camera mode."""
    data = await request.body()
    if not data:
        return JSONResponse({"status": "error", "message": "Empty body"}, status_code=400)
    if len(data) > MAX_UPLOAD_BYTES:
        return JSONResponse({"status": "error", "message": "Image too large"}, status_code=413)
    await host.submit_upload(data)
    return JSONResponse(host.snapshot())


@app.get("/capture/latest")
async def latest_capture() -> Response:
    data = host.latest_image
    if data is None:
        return JSONResponse({"status": "error", "message": "No image available"}, status_code=404)
    return Response(content=data, media_type="image/jpeg")


@app.get("/debug/performance")
async def debug_performance() -> JSONResponse:
    """Get real-time CPU and memory usage."""
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        return JSONResponse({
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(memory.percent, 1),
            "memory_used_mb": round(memory.used / (1024 * 1024), 1),
            "memory_total_mb": round(memory.total / (1024 * 1024), 1),
        })
    except Exception as e:
        logger.error("Performance monitoring error: %s", e)
        return JSONResponse({"error": str(e)}, status_code=500)


@app.get("/preview")
async def preview_stream() -> StreamingResponse:
    """MJPEG preview of the live camera."""
    boundary = "frame"

    async def frame_iterator() -> AsyncIterator[bytes]:
        try:
            async for frame in host.preview_frames():
                header = (
                    f"--{boundary}\r\n"
                    f"Content-Type: image/jpeg\r\n"
                    f"Content-Length: {len(frame)}\r\n\r\n"
                ).encode("ascii")
                yield header + frame + b"\r\n"
        except Exception as e:
            logger.error("Preview stream error: %s", e)

    media_type = f"multipart/x-mixed-replace; boundary={boundary}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


@app.websocket("/ws/ui")
async def ui_socket(ws: WebSocket) -> None:
    await ws.accept()
    queue = host.register_ui()
    try:
        await ws.send_json({"type": "snapshot", "data": host.snapshot()})
        while True:
            event = await queue.get()
            payload = {
                "type": event.type,
                "status": event.status.value,
                "data": event.data,
            }
            if event.error:
                payload["error"] = event.error
            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.debug("WebSocket send failed (client disconnected): %s", e)
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error("Unexpected error in UI websocket: %s", e)
    finally:
        host.unregister_ui(queue)
        try:
            await ws.close()
        except Exception:
            pass


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.controller_host, port=settings.controller_port)


if __name__ == "__main__":
    run()
