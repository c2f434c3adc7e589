"""
Head-pose liveness session.

Turns a noisy per-frame pose classifier into a timed challenge: every pose in
the sequence must be held for ``pose_hold_checks`` consecutive ticks, steps are
separated by a short transition pause, and once the sequence is complete the
subject holds still while a single photo is captured.

All state changes go through ``LivenessSession._dispatch``; polling ticks and
timer callbacks only ever post events to it and re-read the live state when
they run.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple, Union

import numpy as np

from .capture import CaptureError, CaptureTrigger, CapturedPhoto
from .config import LivenessSettings
from .pose import PoseClassifier
from .sensors.detector import DetectorUnavailableError, Face
from .state import (
    COMPLETING_STATUSES,
    POLLING_STATUSES,
    TERMINAL_STATUSES,
    HeadPose,
    HostEvent,
    LivenessStatus,
    SessionState,
    TimerKind,
    status_message,
    step_guidance,
)
from .timers import Scheduler, TimerRegistry

logger = logging.getLogger(__name__)


class VideoSource(Protocol):
    @property
    def is_live(self) -> bool: ...

    def read_frame(self) -> Optional[np.ndarray]: ...

    def release(self) -> None: ...


class LandmarkDetector(Protocol):
    def classify_with_landmarks(self, frame: np.ndarray) -> Optional[Face]: ...


# ============================================================
# Dispatcher events
# ============================================================

@dataclass(frozen=True)
class StreamReady:
    """First frame is playable."""


@dataclass(frozen=True)
class PoseObserved:
    step_index: int
    pose: Optional[HeadPose]  # None when no face was found


@dataclass(frozen=True)
class TimerFired:
    kind: TimerKind


@dataclass(frozen=True)
class FailureReported:
    message: str


@dataclass(frozen=True)
class StopRequested:
    hard: bool = True
    reason: str = ""


SessionEvent = Union[StreamReady, PoseObserved, TimerFired, FailureReported, StopRequested]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class LivenessSession:
    """Owns one liveness attempt: sequence, step, hold counter, timers and status."""

    def __init__(
        self,
        *,
        settings: LivenessSettings,
        source: VideoSource,
        detector: LandmarkDetector,
        classifier: Optional[PoseClassifier] = None,
        capture_trigger: Optional[CaptureTrigger] = None,
        scheduler: Optional[Scheduler] = None,
        on_event: Optional[Callable[[HostEvent], None]] = None,
        on_capture: Optional[Callable[[CapturedPhoto], None]] = None,
        jpeg_quality: int = 92,
    ) -> None:
        sequence = tuple(HeadPose(pose) for pose in settings.pose_sequence)
        if not sequence:
            raise ValueError("Pose sequence must not be empty")
        if HeadPose.UNKNOWN in sequence:
            raise ValueError("Pose sequence may only contain concrete poses")

        self.settings = settings
        self.sequence: Tuple[HeadPose, ...] = sequence
        self._source = source
        self._detector = detector
        self._classifier = classifier or PoseClassifier(
            ratio_high=settings.pose_ratio_high,
            ratio_low=settings.pose_ratio_low,
        )
        self._capture = capture_trigger or CaptureTrigger(source, jpeg_quality=jpeg_quality)
        self._timers = TimerRegistry(scheduler)
        self._on_event = on_event
        self._on_capture = on_capture

        self._state = SessionState()
        self._poll_task: Optional[asyncio.Task[None]] = None
        # Bumped on every stop so in-flight ticks can tell they are stale
        self._generation = 0
        self._capture_emitted = False
        self._inflight: Optional[asyncio.Future] = None
        self._last_published: Optional[Tuple[LivenessStatus, str]] = None

    # ------------------------------------------------------------------
    # Read-only projection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return dataclasses.replace(self._state)

    @property
    def status(self) -> LivenessStatus:
        return self._state.status

    @property
    def active_timers(self) -> frozenset:
        return self._timers.active_kinds

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def message(self) -> str:
        return status_message(self._state)

    @property
    def required_pose(self) -> Optional[HeadPose]:
        index = self._state.current_step_index
        return self.sequence[index] if index < len(self.sequence) else None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start(self, *, poll: bool = True) -> None:
        """Begin checking once the stream is playable (Pending -> Checking)."""
        self._dispatch(StreamReady())
        if poll and self._state.status == LivenessStatus.CHECKING and not self.is_polling:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name="liveness-poll")

    def hard_stop(self, reason: str = "") -> None:
        """Cancel everything, release the stream and reset to Pending."""
        self._dispatch(StopRequested(hard=True, reason=reason))

    def soft_stop(self, reason: str = "") -> None:
        """Cancel everything and release the stream, keeping the current fields."""
        self._dispatch(StopRequested(hard=False, reason=reason))

    def report_failure(self, message: str) -> None:
        self._dispatch(FailureReported(message))

    async def tick(self) -> bool:
        """
        Classify the current frame once.

        Returns False when polling must stop (sequence finished, capture
        pending, stream gone, status left Checking, or the session was
        stopped while the classifier was running).
        """
        st = self._state
        if not self._keeps_polling():
            logger.info(
                "Pose polling stopping (status=%s, step=%d/%d, capture_pending=%s, live=%s)",
                st.status.value,
                st.current_step_index,
                len(self.sequence),
                st.is_capture_pending,
                self._source.is_live,
            )
            self._stop_polling()
            return False
        if st.is_transitioning:
            logger.debug("Pose tick skipped (transitioning between steps)")
            return True

        frame = self._source.read_frame()
        if frame is None:
            logger.debug("Pose tick skipped (no frame)")
            return True

        generation = self._generation
        step = st.current_step_index
        logger.debug("Pose check running. Required: %s (step %d)", self.sequence[step].value, step)
        try:
            pose = await self._classify(frame)
        except DetectorUnavailableError as exc:
            logger.error("Face detector unavailable: %s", exc)
            if generation == self._generation:
                self.report_failure(f"Detection error: {exc}")
            return False

        if generation != self._generation:
            logger.debug("Pose tick discarded (session stopped mid-tick)")
            return False
        self._dispatch(PoseObserved(step_index=step, pose=pose))
        return True

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, PoseObserved):
            self._on_pose(event)
        elif isinstance(event, TimerFired):
            if event.kind == TimerKind.SEQUENCE_TIMEOUT:
                self._on_sequence_timeout()
            elif event.kind == TimerKind.STEP_TRANSITION:
                self._on_step_transition()
            elif event.kind == TimerKind.CAPTURE_DELAY:
                self._on_capture_delay()
            elif event.kind == TimerKind.FEEDBACK_FLASH:
                self._on_feedback_cleared()
        elif isinstance(event, StreamReady):
            self._on_stream_ready()
        elif isinstance(event, FailureReported):
            self._on_failure(event.message)
        elif isinstance(event, StopRequested):
            self._on_stop(event)
        else:
            raise TypeError(f"Unknown session event: {event!r}")
        self._publish()

    def _on_stream_ready(self) -> None:
        st = self._state
        if st.status in TERMINAL_STATUSES:
            logger.warning("Start ignored: session is %s, a hard restart is required", st.status.value)
            return
        if st.is_capture_pending or st.status in COMPLETING_STATUSES:
            logger.warning("Start ignored: capture already under way (%s)", st.status.value)
            return
        if st.status in POLLING_STATUSES:
            logger.debug("Start ignored: already checking")
            return

        st.status = LivenessStatus.CHECKING
        st.current_step_index = 0
        st.hold_counter = 0
        st.is_transitioning = False
        st.guidance_message = step_guidance(0, self.sequence)
        self._start_timer(TimerKind.SEQUENCE_TIMEOUT, self.settings.timeout_ms)
        logger.info("🎬 Liveness check started: %s", " -> ".join(p.value for p in self.sequence))

    def _on_pose(self, event: PoseObserved) -> None:
        st = self._state
        if not self._accepts_pose():
            logger.debug("Pose result ignored (status=%s, transitioning=%s)", st.status.value, st.is_transitioning)
            return
        if event.step_index != st.current_step_index:
            logger.debug("Pose result ignored (stale step %d, now %d)", event.step_index, st.current_step_index)
            return

        step = st.current_step_index
        required = self.sequence[step]
        if event.pose is None:
            st.hold_counter = 0
            st.guidance_message = step_guidance(step, self.sequence, no_face=True)
            logger.debug("No face detected in pose check frame")
            return
        if event.pose != required:
            st.hold_counter = 0
            st.guidance_message = step_guidance(step, self.sequence)
            logger.debug("Detected pose %s, required %s", event.pose.value, required.value)
            return

        st.hold_counter += 1
        logger.debug("Pose hold counter: %d (required %d)", st.hold_counter, self.settings.pose_hold_checks)
        if st.hold_counter < self.settings.pose_hold_checks:
            return

        st.hold_counter = 0
        st.current_step_index = step + 1
        logger.info("✅ Pose %s held (step %d/%d)", required.value, st.current_step_index, len(self.sequence))
        self._flash_feedback()

        if st.current_step_index >= len(self.sequence):
            self._timers.cancel(TimerKind.SEQUENCE_TIMEOUT)
            self._stop_polling()
            st.status = LivenessStatus.HOLD_STILL
            st.is_capture_pending = True
            st.guidance_message = "Liveness Confirmed! Hold Still..."
            self._start_timer(TimerKind.CAPTURE_DELAY, self.settings.capture_delay_ms)
            logger.info("🎉 Pose sequence complete; capturing in %dms", self.settings.capture_delay_ms)
        else:
            st.status = LivenessStatus.TRANSITIONING
            st.is_transitioning = True
            st.guidance_message = "Great!"
            self._start_timer(TimerKind.STEP_TRANSITION, self.settings.step_transition_delay_ms)

    def _on_step_transition(self) -> None:
        st = self._state
        if st.status != LivenessStatus.TRANSITIONING:
            return
        st.status = LivenessStatus.CHECKING
        st.is_transitioning = False
        st.guidance_message = step_guidance(st.current_step_index, self.sequence)
        logger.debug("Step transition finished; now %s", st.guidance_message)

    def _on_sequence_timeout(self) -> None:
        st = self._state
        if st.is_capture_pending or st.status not in POLLING_STATUSES:
            return
        st.status = LivenessStatus.TIMEOUT
        st.is_transitioning = False
        st.hold_counter = 0
        st.guidance_message = status_message(st)
        logger.warning("⏱️ Liveness check timed out at step %d/%d", st.current_step_index, len(self.sequence))
        self._teardown()

    def _on_capture_delay(self) -> None:
        st = self._state
        if st.status != LivenessStatus.HOLD_STILL or not st.is_capture_pending:
            return
        st.status = LivenessStatus.CAPTURING
        st.guidance_message = "Capturing photo..."
        self._publish()

        try:
            photo = self._capture.capture()
        except CaptureError as exc:
            logger.error("❌ Capture failed: %s", exc)
            st.is_capture_pending = False
            self._on_failure(exc.user_message)
            return

        self._teardown()
        self._emit_capture(photo)

    def _on_feedback_cleared(self) -> None:
        if self._state.show_success_feedback:
            self._state.show_success_feedback = False
            self._emit(HostEvent(type="feedback", status=self._state.status, data={"active": False}))

    def _on_failure(self, message: str) -> None:
        st = self._state
        if st.status == LivenessStatus.PENDING:
            logger.warning("Failure reported on idle session: %s", message)
            return
        st.status = LivenessStatus.FAILED
        st.is_transitioning = False
        st.is_capture_pending = False
        st.guidance_message = status_message(st)
        self._teardown()
        self._emit(HostEvent(type="error", status=st.status, error=message))

    def _on_stop(self, event: StopRequested) -> None:
        logger.info(
            "%s stop requested%s",
            "Hard" if event.hard else "Soft",
            f" ({event.reason})" if event.reason else "",
        )
        self._teardown()
        if event.hard:
            self._state = SessionState()
            self._capture_emitted = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _accepts_pose(self) -> bool:
        st = self._state
        return (
            st.status == LivenessStatus.CHECKING
            and not st.is_transitioning
            and not st.is_capture_pending
            and st.current_step_index < len(self.sequence)
        )

    def _keeps_polling(self) -> bool:
        st = self._state
        return (
            st.status in POLLING_STATUSES
            and not st.is_capture_pending
            and st.current_step_index < len(self.sequence)
            and self._source.is_live
        )

    def _start_timer(self, kind: TimerKind, delay_ms: int) -> None:
        self._timers.start(kind, delay_ms / 1000.0, lambda: self._dispatch(TimerFired(kind)))

    def _flash_feedback(self) -> None:
        self._state.show_success_feedback = True
        self._start_timer(TimerKind.FEEDBACK_FLASH, self.settings.feedback_duration_ms)
        self._emit(HostEvent(type="feedback", status=self._state.status, data={"active": True}))

    def _teardown(self) -> None:
        """Cancel timers and polling, release the stream."""
        self._generation += 1
        self._timers.cancel_all()
        self._stop_polling()
        self._state.show_success_feedback = False
        try:
            self._source.release()
        except Exception as exc:
            logger.warning("Error releasing video source: %s", exc)

    def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task.done():
            return
        if task is _current_task():
            # The loop notices it was detached and exits after this tick
            return
        task.cancel()

    async def _poll_loop(self) -> None:
        interval = self.settings.check_interval_ms / 1000.0
        logger.info("Pose detection interval started (%dms)", self.settings.check_interval_ms)
        try:
            while self._poll_task is _current_task():
                await asyncio.sleep(interval)
                if self._poll_task is not _current_task():
                    break
                if not await self.tick():
                    break
        except asyncio.CancelledError:
            logger.debug("Pose detection interval cancelled")
            raise
        except Exception as exc:
            logger.exception("Pose polling loop crashed")
            if self._poll_task is _current_task():
                self._poll_task = None
                self.report_failure(f"Detection error: {exc}")
        finally:
            if self._poll_task is _current_task():
                self._poll_task = None

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for a detector call still running in its worker thread.

        Cancelling a tick does not stop the thread, so the detector must not be
        closed or shared with a new session until this returns True.
        """
        future = self._inflight
        if future is None or future.done():
            return True
        done, _ = await asyncio.wait({future}, timeout=timeout)
        if not done:
            logger.warning("Detector call still running after %.1fs", timeout or 0.0)
        return bool(done)

    def _inflight_done(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        if not future.cancelled():
            # Abandoned calls still have their outcome consumed
            future.exception()

    async def _classify(self, frame: np.ndarray) -> Optional[HeadPose]:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._detector.classify_with_landmarks, frame)
        self._inflight = future
        future.add_done_callback(self._inflight_done)
        try:
            face = await asyncio.shield(future)
        except asyncio.CancelledError:
            raise
        except DetectorUnavailableError:
            raise
        except Exception:
            logger.exception("Pose detection failed; counting frame as no face")
            return None
        return self._classifier.classify_face(face)

    def _emit_capture(self, photo: CapturedPhoto) -> None:
        if self._capture_emitted:
            logger.warning("Duplicate capture suppressed")
            return
        self._capture_emitted = True
        if self._on_capture is not None:
            try:
                self._on_capture(photo)
            except Exception:
                logger.exception("Capture callback failed")

    def _publish(self) -> None:
        """Emit a status event when the (status, message) pair changed."""
        pair = (self._state.status, status_message(self._state))
        if pair == self._last_published:
            return
        self._last_published = pair
        st = self._state
        self._emit(
            HostEvent(
                type="status",
                status=st.status,
                data={
                    "message": pair[1],
                    "step": st.current_step_index,
                    "total_steps": len(self.sequence),
                    "required_pose": self.required_pose.value if self.required_pose else None,
                },
            )
        )

    def _emit(self, event: HostEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Session event subscriber failed")
