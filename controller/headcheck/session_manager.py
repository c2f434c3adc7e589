"""Session host: camera/upload modes, liveness session lifecycle and UI fan-out."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import base64
import datetime
import enum
import importlib.util
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .analysis import AnalysisError, DeepFaceEstimator, ImageAnalysis, ImageAnalyzer
from .capture import CapturedPhoto
from .config import Settings, get_settings
from .liveness_session import LandmarkDetector, LivenessSession
from .sensors.detector import FaceDetector
from .sensors.webcam_service import CameraError, WebcamSource
from .state import HostEvent, LivenessStatus
from .timers import Scheduler

logger = logging.getLogger(__name__)


class HostMode(str, enum.Enum):
    IDLE = "idle"
    CAMERA = "camera"
    IMAGE = "image"


@dataclass
class ImageContext:
    """Last still shown to the user (captured or uploaded)."""
    data: Optional[bytes] = None
    origin: Optional[str] = None
    received_at: Optional[float] = None
    analysis: Optional[ImageAnalysis] = None
    error: Optional[str] = None


class SessionHost:
    """Starts/stops the camera, feeds the liveness session and relays its events."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        detector: Optional[LandmarkDetector] = None,
        analyzer: Optional[ImageAnalyzer] = None,
        source_factory: Optional[Callable[[], WebcamSource]] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._lock = asyncio.Lock()
        self._analysis_lock = asyncio.Lock()
        self._mode = HostMode.IDLE
        self._ui_subscribers: List[asyncio.Queue[HostEvent]] = []
        self._detector = detector or FaceDetector(
            min_confidence=self.settings.detector.min_confidence,
            max_faces=1,
            static_image_mode=False,
        )
        self._analyzer = analyzer or ImageAnalyzer(
            FaceDetector(
                min_confidence=self.settings.detector.min_confidence,
                max_faces=self.settings.detector.max_faces,
                static_image_mode=True,
            ),
            settings=self.settings.analysis,
            estimator=self._default_estimator(),
        )
        self._source_factory = source_factory or self._make_source
        self._scheduler = scheduler

        self._source: Optional[WebcamSource] = None
        self._session: Optional[LivenessSession] = None
        self._image = ImageContext()
        self._last_error: Optional[str] = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        # Stopped sessions whose detector call may still be running
        self._retired: List[LivenessSession] = []

    # ------------------------------------------------------------------
    # Read-only projection
    # ------------------------------------------------------------------

    @property
    def mode(self) -> HostMode:
        return self._mode

    @property
    def status(self) -> LivenessStatus:
        return self._session.status if self._session else LivenessStatus.PENDING

    @property
    def session(self) -> Optional[LivenessSession]:
        return self._session

    @property
    def source(self) -> Optional[WebcamSource]:
        return self._source

    @property
    def latest_image(self) -> Optional[bytes]:
        return self._image.data

    def snapshot(self) -> Dict[str, Any]:
        session = self._session
        liveness: Dict[str, Any] = {"status": LivenessStatus.PENDING.value}
        if session is not None:
            liveness = session.state.to_dict()
            liveness["message"] = session.message
            liveness["total_steps"] = len(session.sequence)
        return {
            "mode": self._mode.value,
            "liveness": liveness,
            "image": {
                "available": self._image.data is not None,
                "origin": self._image.origin,
                "analysis": self._image.analysis.to_dict() if self._image.analysis else None,
                "error": self._image.error,
            },
            "error": self._last_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info(
            "Session host ready (sequence=%s, hold=%d, timeout=%dms)",
            [p.value for p in self.settings.liveness.pose_sequence],
            self.settings.liveness.pose_hold_checks,
            self.settings.liveness.timeout_ms,
        )

    async def shutdown(self) -> None:
        logger.info("Stopping session host")
        async with self._lock:
            self._end_session(hard=True, reason="shutdown")
            self._mode = HostMode.IDLE
            await self._drain_retired()

        for task in list(self._background_tasks):
            task.cancel()
        for task in list(self._background_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping background task: %s", e)
        self._background_tasks.clear()

        for detector in (self._detector, getattr(self._analyzer, "detector", None)):
            close = getattr(detector, "close", None)
            if close is not None:
                try:
                    close()
                except Exception as e:
                    logger.warning("Error closing detector: %s", e)
        logger.info("Session host stopped")

    def register_ui(self) -> asyncio.Queue[HostEvent]:
        queue: asyncio.Queue[HostEvent] = asyncio.Queue(maxsize=self.settings.performance.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[HostEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_camera(self) -> LivenessStatus:
        """Start (or restart) the camera and a fresh liveness session."""
        async with self._lock:
            self._end_session(hard=True, reason="camera restart")
            await self._drain_retired()
            self._image = ImageContext()
            self._last_error = None
            self._mode = HostMode.CAMERA

            source = self._source_factory()
            self._source = source
            try:
                await source.start()
            except CameraError as exc:
                logger.error("Error accessing camera: %s", exc)
                source.release()
                self._source = None
                self._mode = HostMode.IDLE
                self._report_error(str(exc))
                return self.status
            source.on_failure = lambda reason: self._on_video_failure(source, reason)

            self._session = LivenessSession(
                settings=self.settings.liveness,
                source=source,
                detector=self._detector,
                scheduler=self._scheduler,
                on_event=self._broadcast,
                on_capture=self._on_capture,
                jpeg_quality=self.settings.camera.jpeg_quality,
            )
            self._session.start()
            return self.status

    async def stop_camera(self) -> None:
        async with self._lock:
            self._end_session(hard=True, reason="camera stopped")
            if self._mode == HostMode.CAMERA:
                self._mode = HostMode.IDLE

    async def submit_upload(self, data: bytes) -> Optional[ImageAnalysis]:
        """Switch to upload mode and review the supplied image."""
        async with self._lock:
            if self._mode == HostMode.CAMERA:
                self._end_session(hard=True, reason="switched to upload")
            self._mode = HostMode.IMAGE
            self._last_error = None
            self._image = ImageContext(data=data, origin="upload", received_at=time.time())
        return await self._analyze(self._image)

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _on_capture(self, photo: CapturedPhoto) -> None:
        # Session has already soft-stopped; leave camera mode and show the still
        self._source = None
        self._mode = HostMode.IMAGE
        self._image = ImageContext(data=photo.jpeg, origin="capture", received_at=photo.captured_at)
        self._broadcast(
            HostEvent(
                type="capture",
                status=self.status,
                data={
                    "image_b64": base64.b64encode(photo.jpeg).decode("ascii"),
                    "width": photo.width,
                    "height": photo.height,
                },
            )
        )
        self._spawn(self._process_capture(self._image), name="capture-review")

    def _on_video_failure(self, source: WebcamSource, reason: str) -> None:
        if source is not self._source or self._mode != HostMode.CAMERA:
            return
        logger.error("Video playback failed: %s", reason)
        self._end_session(hard=True, reason="video playback failure")
        self._mode = HostMode.IDLE
        self._report_error("Could not play video.")

    async def _process_capture(self, image: ImageContext) -> None:
        if self.settings.save_captures and image.data is not None:
            await self._save_capture(image.data)
        await self._analyze(image)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _end_session(self, *, hard: bool, reason: str) -> None:
        session = self._session
        if session is not None:
            if hard:
                session.hard_stop(reason)
            else:
                session.soft_stop(reason)
        if self._source is not None:
            self._source.release()
            self._source = None
        if hard and session is not None:
            self._session = None
            self._retired.append(session)

    async def _drain_retired(self) -> None:
        """Let stopped sessions finish their detector call before the detector is reused or closed."""
        timeout = self.settings.performance.detector_drain_timeout_s
        while self._retired:
            session = self._retired.pop()
            if not await session.wait_idle(timeout):
                logger.warning("Proceeding while a detector call is still running")

    async def _analyze(self, image: ImageContext) -> Optional[ImageAnalysis]:
        if image.data is None:
            return None
        loop = asyncio.get_running_loop()
        async with self._analysis_lock:
            try:
                analysis = await loop.run_in_executor(None, self._analyzer.analyze_bytes, image.data)
            except AnalysisError as exc:
                logger.warning("Static analysis failed: %s", exc)
                image.analysis = None
                image.error = str(exc)
                if image is self._image:
                    self._report_error(str(exc))
                return None

        image.analysis = analysis
        image.error = None
        if image is self._image:
            self._broadcast(HostEvent(type="analysis", status=self.status, data=analysis.to_dict()))
        return analysis

    async def _save_capture(self, frame_bytes: bytes) -> None:
        """Write the captured photo and a small metadata file under captures_directory."""
        captures_dir = Path(self.settings.captures_directory)

        def _write_files() -> str:
            captures_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S_%f")[:-3]
            image_filepath = captures_dir / f"{timestamp}_liveness.jpg"
            with open(image_filepath, "wb") as f:
                f.write(frame_bytes)
            metadata = {
                "timestamp": timestamp,
                "capture_time": datetime.datetime.now().isoformat(),
                "file_size_bytes": len(frame_bytes),
                "pose_sequence": [p.value for p in self.settings.liveness.pose_sequence],
            }
            with open(captures_dir / f"{timestamp}_liveness.json", "w") as f:
                json.dump(metadata, f, indent=2)
            return str(image_filepath)

        try:
            loop = asyncio.get_running_loop()
            filepath = await loop.run_in_executor(None, _write_files)
            logger.info("Saved capture to %s", filepath)
        except OSError:
            logger.exception("Failed to save capture")

    def _report_error(self, message: str) -> None:
        self._last_error = message
        self._broadcast(HostEvent(type="error", status=self.status, error=message))

    def _broadcast(self, event: HostEvent) -> None:
        """Fan an event out to all UI subscribers, dropping the oldest when full."""
        if event.type == "error" and event.error:
            self._last_error = event.error
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    def _spawn(self, coro, *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _make_source(self) -> WebcamSource:
        camera = self.settings.camera
        return WebcamSource(
            camera.camera_id,
            width=camera.resolution_width,
            height=camera.resolution_height,
            fps=camera.fps,
            preview_jpeg_quality=camera.preview_jpeg_quality,
            preview_frame_skip=camera.preview_frame_skip,
            preview_queue_size=self.settings.performance.preview_queue_size,
            first_frame_timeout_s=camera.first_frame_timeout_s,
            max_failed_reads=camera.max_failed_reads,
        )

    def _default_estimator(self) -> Optional[DeepFaceEstimator]:
        if not self.settings.analysis.enable_age_gender:
            return None
        if importlib.util.find_spec("deepface") is None:
            logger.warning("DeepFace not installed - age/gender review disabled")
            return None
        return DeepFaceEstimator()

    async def preview_frames(self) -> AsyncIterator[bytes]:
        """Preview from the active camera; ends when the camera is released."""
        source = self._source
        if source is None:
            return
        try:
            async for frame in source.preview_stream():
                if source is not self._source:
                    break
                yield frame
        except Exception as e:
            logger.error("Preview stream error: %s", e)
