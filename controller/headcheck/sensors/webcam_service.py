"""
Webcam video source for the liveness session.

Owns the OpenCV capture handle, keeps the latest frame for the session to
classify, and fans JPEG preview frames out to HTTP clients.
"""

from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import base64
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, Callable, Optional, Tuple

import numpy as np

# Optional deps
try:
    import cv2  # type: ignore
except Exception:
    cv2 = None


logger = logging.getLogger(__name__)

_PLACEHOLDER_JPEG = base64.b64decode(
    b"/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAAgGBgcGBQgHBwcJCQgKDBQNDAsLDBkSEw8UHRofHh0aHBwgJC4nICIsIxwcKDcpLDAxNDQ0Hyc5PTgyPC4zNDL/2wBDAQkJCQwLDBgNDRgyIRwhMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjL/wAARCAABAAEDASIAAhEBAxEB/8QAHwAAAQUBAQEBAQEAAAAAAAAAAAECAwQFBgcICQoL/8QAtRAAAgEDAwIEAwUFBAQAAAF9AQIDAAQRBRIhMUEGE1FhByJxFDKBkaEII0KxwRVS0fAkM2JyggkKFhcYGRolJicoKSo0NTY3ODk6Q0RFRkdISUpTVFVWV1hZWmNkZWZnaGlqc3R1dnd4eXqDhIWGh4iJipKTlJWWl5iZmqKjpKWmp6ipqrKztLW2t7i5usLDxMXGx8jJytLT1NXW19jZ2uHi4+Tl5ufo6erx8vP09fb3+Pn6/8QAHwEAAwEBAQEBAQEBAQAAAAAAAAECAwQFBgcICQoL/8QAtREAAgECBAQDBAcFBAQAAQJ3AAECAxEEBSExBhJBUQdhcRMiMoEIFEKRobHBCSMzUvAVYnLRChYkNOEl8RcYGRomJygpKjU2Nzg5OkNERUZHSElKU1RVVldYWVpjZGVmZ2hpanN0dXZ3eHl6goOEhYaHiImKkpOUlZaXmJmaoqOkpaanqKmqsrO0tba3uLm6wsPExcbHyMnK0tPU1dbX2Nna4uPk5ebn6Onq8vP09fb3+Pn6/9oADAMBAAIRAxEAPwD5/ooooA//2Q=="
)


class CameraError(RuntimeError):
    """Raised when the webcam cannot be opened or stops producing frames."""


class WebcamSource:
    """Live frame source backed by ``cv2.VideoCapture``."""

    def __init__(
        self,
        camera_id: int = 0,
        *,
        width: int = 640,
        height: int = 480,
        fps: int = 30,
        preview_jpeg_quality: int = 80,
        preview_frame_skip: int = 2,
        preview_queue_size: int = 2,
        first_frame_timeout_s: float = 5.0,
        max_failed_reads: int = 30,
        on_failure: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.camera_id = camera_id
        self.width = width
        self.height = height
        self.fps = fps
        self.preview_jpeg_quality = preview_jpeg_quality
        self.preview_frame_skip = max(int(preview_frame_skip), 1)
        self.preview_queue_size = preview_queue_size
        self.first_frame_timeout_s = first_frame_timeout_s
        self.max_failed_reads = max_failed_reads
        self.on_failure = on_failure

        self._cap = None
        # Reads and release() share one thread so a release never races a read
        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._latest: Optional[np.ndarray] = None
        self._first_frame = asyncio.Event()
        self._paused = False
        self._ended = False
        self._preview_subscribers: list[asyncio.Queue[bytes]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def enable_hardware(self) -> bool:
        return cv2 is not None

    async def start(self) -> None:
        """Open the camera and wait until the first frame is readable."""
        if self._cap is not None:
            return
        if not self.enable_hardware:
            raise CameraError("OpenCV not available - webcam disabled")

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="webcam")
        self._paused = False
        self._ended = False
        self._latest = None
        self._first_frame = asyncio.Event()

        loop = asyncio.get_running_loop()
        try:
            self._cap = await loop.run_in_executor(self._executor, self._open_capture)
        except Exception:
            self._shutdown_executor()
            raise
        self._loop_task = asyncio.create_task(self._grab_loop(), name="webcam-grab-loop")

        try:
            await asyncio.wait_for(self._first_frame.wait(), timeout=self.first_frame_timeout_s)
        except asyncio.TimeoutError:
            self.release()
            raise CameraError("Could not play video.") from None
        if self._ended:
            self.release()
            raise CameraError("Could not play video.")
        logger.info("Webcam %s streaming (%sx%s)", self.camera_id, *self.dimensions)

    def _open_capture(self):
        logger.info("Opening webcam (camera_id=%s)", self.camera_id)
        cap = cv2.VideoCapture(self.camera_id)
        if not cap.isOpened():
            cap.release()
            raise CameraError(f"No camera found (camera_id={self.camera_id}).")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        return cap

    def release(self) -> None:
        """Stop streaming and release the device. Safe to call repeatedly."""
        task = self._loop_task
        self._loop_task = None
        if task is not None and not task.done():
            task.cancel()

        cap = self._cap
        self._cap = None
        self._latest = None
        if cap is not None:
            if self._executor is not None:
                self._executor.submit(cap.release)
            else:
                cap.release()
            logger.info("Webcam %s released", self.camera_id)
        self._shutdown_executor()

    def _shutdown_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def stop(self) -> None:
        task = self._loop_task
        self.release()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Frame access
    # ------------------------------------------------------------------

    @property
    def is_live(self) -> bool:
        return self._cap is not None and not self._paused and not self._ended and self._latest is not None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def ended(self) -> bool:
        return self._ended

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def dimensions(self) -> Tuple[int, int]:
        """Native (width, height) of the most recent frame."""
        if self._latest is None:
            return (0, 0)
        h, w = self._latest.shape[:2]
        return (int(w), int(h))

    def read_frame(self) -> Optional[np.ndarray]:
        """Latest BGR frame, or None when not live."""
        if not self.is_live:
            return None
        return self._latest

    def _read(self) -> Optional[np.ndarray]:
        cap = self._cap
        if cap is None or not cap.isOpened():
            return None
        ret, frame = cap.read()
        if not ret or frame is None:
            return None
        return frame

    async def _grab_loop(self) -> None:
        loop = asyncio.get_running_loop()
        failed_reads = 0
        frame_idx = 0
        try:
            while self._cap is not None:
                executor = self._executor
                if executor is None:
                    break
                frame = await loop.run_in_executor(executor, self._read)
                if frame is None:
                    failed_reads += 1
                    if failed_reads >= self.max_failed_reads:
                        self._mark_ended("Webcam stopped producing frames")
                        break
                    await asyncio.sleep(0.05)
                    continue

                failed_reads = 0
                self._latest = frame
                self._first_frame.set()

                frame_idx += 1
                if self._preview_subscribers and frame_idx % self.preview_frame_skip == 0:
                    self._broadcast_frame(self._serialize_frame(frame))
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Webcam grab loop crashed")
            self._mark_ended("Webcam grab loop crashed")
        finally:
            logger.info("Webcam grab loop stopped")

    def _mark_ended(self, reason: str) -> None:
        logger.warning("%s (camera_id=%s)", reason, self.camera_id)
        self._ended = True
        self._first_frame.set()
        if self.on_failure is not None:
            try:
                self.on_failure(reason)
            except Exception:
                logger.exception("Webcam failure callback failed")

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def _serialize_frame(self, frame: Optional[np.ndarray]) -> bytes:
        if frame is None or cv2 is None:
            return _PLACEHOLDER_JPEG
        try:
            ret, enc = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.preview_jpeg_quality])
            return enc.tobytes() if ret else _PLACEHOLDER_JPEG
        except Exception as e:
            logger.warning("Frame serialization error: %s", e)
            return _PLACEHOLDER_JPEG

    def _broadcast_frame(self, frame: bytes) -> None:
        for q in list(self._preview_subscribers):
            if q.full():
                try:
                    q.get_nowait()
                except QueueEmpty:
                    pass
            q.put_nowait(frame)

    async def preview_stream(self) -> AsyncIterator[bytes]:
        """Stream preview JPEG frames; placeholder while the camera is idle."""
        q: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self.preview_queue_size)
        self._preview_subscribers.append(q)
        try:
            while True:
                try:
                    frame = await asyncio.wait_for(q.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    frame = _PLACEHOLDER_JPEG
                yield frame
        finally:
            self._preview_subscribers.remove(q)
