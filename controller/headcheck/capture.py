"""Still photo capture from the live video source."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    @property
    def is_live(self) -> bool: ...

    def read_frame(self) -> Optional[np.ndarray]: ...


class CaptureError(RuntimeError):
    """Raised when a still cannot be produced from the video source."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


@dataclass
class CapturedPhoto:
    jpeg: bytes
    width: int
    height: int
    captured_at: float


class CaptureTrigger:
    """Render the current frame at native resolution and encode it as JPEG."""

    def __init__(self, source: Optional[FrameSource], *, jpeg_quality: int = 92) -> None:
        self.source = source
        self.jpeg_quality = jpeg_quality

    def capture(self) -> CapturedPhoto:
        if self.source is None or not self.source.is_live:
            raise CaptureError("Capture Error: No video stream.")
        frame = self.source.read_frame()
        if frame is None:
            raise CaptureError("Capture Error: No video frame.")

        h, w = frame.shape[:2]
        if w == 0 or h == 0:
            raise CaptureError("Capture Error: Canvas context failed.", log_message=f"Empty frame {w}x{h}")

        # Own copy so the grab loop can keep writing
        still = np.ascontiguousarray(frame).copy()
        try:
            success, encoded = cv2.imencode(".jpg", still, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        except cv2.error as exc:
            raise CaptureError("Capture Error: Canvas context failed.", log_message=str(exc)) from exc
        if not success:
            raise CaptureError("Capture Error: Canvas context failed.", log_message="cv2.imencode returned False")

        logger.info("Photo captured automatically (%dx%d, %d bytes)", w, h, encoded.size)
        return CapturedPhoto(jpeg=encoded.tobytes(), width=int(w), height=int(h), captured_at=time.time())
