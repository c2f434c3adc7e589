"""
Tests for the SessionHost: camera/upload modes and UI event fan-out

Each scenario runs inside asyncio.run() with a fake camera, a scripted
landmark detector and a manual timer scheduler.

Usage:
    pytest tests/test_session_host.py -v
"""

import asyncio
import base64
import threading
import time

import cv2
import numpy as np
import pytest

from conftest import FakeSource, ManualScheduler, ScriptedDetector
from headcheck.analysis import ImageAnalyzer
from headcheck.config import LivenessSettings, PerformanceSettings, Settings
from headcheck.session_manager import HostMode, SessionHost
from headcheck.sensors.detector import DetectionResult, Face
from headcheck.sensors.webcam_service import CameraError
from headcheck.state import LivenessStatus


class AsyncFakeSource(FakeSource):
    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.fail = fail
        self.started = False

    async def start(self) -> None:
        if self.fail:
            raise CameraError("Could not play video.")
        self.started = True


class OneFaceDetector:
    def classify(self, frame):
        return DetectionResult(faces=[Face(box=(4, 4, 30, 30))])

    def close(self):
        pass


class AdultEstimator:
    def estimate(self, face_image):
        return 34.0, "female", 0.93


class HostHarness:
    def __init__(self, *, camera_fails: bool = False) -> None:
        self.scheduler = ManualScheduler()
        self.detector = ScriptedDetector()
        self.sources = []
        self.camera_fails = camera_fails
        self.settings = Settings(
            _env_file=None,
            # Polling is driven by hand
            liveness=LivenessSettings(check_interval_ms=600000),
            performance=PerformanceSettings(ui_event_queue_size=256),
        )
        self.host = SessionHost(
            settings=self.settings,
            detector=self.detector,
            analyzer=ImageAnalyzer(OneFaceDetector(), settings=self.settings.analysis, estimator=AdultEstimator()),
            source_factory=self._new_source,
            scheduler=self.scheduler,
        )
        self.queue = None

    def _new_source(self):
        source = AsyncFakeSource(fail=self.camera_fails)
        self.sources.append(source)
        return source

    def drain(self):
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    async def complete_sequence(self):
        for pose in self.settings.liveness.pose_sequence:
            for _ in range(self.settings.liveness.pose_hold_checks):
                self.detector.push(pose)
                await self.host.session.tick()
            self.scheduler.advance(self.settings.liveness.step_transition_delay_ms / 1000.0)
        self.scheduler.advance(self.settings.liveness.capture_delay_ms / 1000.0)

    async def settle(self):
        while self.host._background_tasks:
            await asyncio.gather(*list(self.host._background_tasks))


def run_scenario(scenario, **kwargs):
    async def runner():
        h = HostHarness(**kwargs)
        h.queue = h.host.register_ui()
        await h.host.start()
        try:
            return await scenario(h)
        finally:
            await h.host.shutdown()

    return asyncio.run(runner())


def jpeg_bytes() -> bytes:
    ok, encoded = cv2.imencode(".jpg", np.full((80, 80, 3), 60, dtype=np.uint8))
    assert ok
    return encoded.tobytes()


# ============================================================
# Camera mode
# ============================================================

class TestCameraMode:

    def test_start_camera_begins_checking(self):
        async def scenario(h):
            status = await h.host.start_camera()
            return status, h.host.mode, h.sources[0].started, h.host.snapshot()

        status, mode, started, snap = run_scenario(scenario)
        assert status == LivenessStatus.CHECKING
        assert mode == HostMode.CAMERA
        assert started
        assert snap["liveness"]["message"] == "(1/4) Please look CENTER"
        assert snap["liveness"]["total_steps"] == 4

    def test_camera_error_returns_to_idle(self):
        async def scenario(h):
            await h.host.start_camera()
            return h.host.mode, h.host.session, h.drain(), h.sources[0]

        mode, session, events, source = run_scenario(scenario, camera_fails=True)
        assert mode == HostMode.IDLE
        assert session is None
        assert source.released
        errors = [e for e in events if e.type == "error"]
        assert errors and errors[-1].error == "Could not play video."

    def test_full_sequence_captures_and_reviews(self):
        async def scenario(h):
            await h.host.start_camera()
            await h.complete_sequence()
            await h.settle()
            return h.host.mode, h.host.snapshot(), h.drain(), h.sources[0]

        mode, snap, events, source = run_scenario(scenario)
        types = [e.type for e in events]
        assert types.count("capture") == 1
        assert types.index("capture") < types.index("analysis")
        assert mode == HostMode.IMAGE
        assert source.released

        capture = next(e for e in events if e.type == "capture")
        assert base64.b64decode(capture.data["image_b64"]).startswith(b"\xff\xd8")
        assert (capture.data["width"], capture.data["height"]) == (64, 48)

        analysis = next(e for e in events if e.type == "analysis")
        assert analysis.data["border_color"] == "lime"
        assert snap["image"]["origin"] == "capture"
        assert snap["image"]["analysis"]["faces"][0]["age"] == 34

    def test_restart_after_timeout(self):
        async def scenario(h):
            await h.host.start_camera()
            h.scheduler.advance(h.settings.liveness.timeout_ms / 1000.0)
            timed_out = h.host.status
            restarted = await h.host.start_camera()
            return timed_out, restarted, list(h.sources), h.sources[1].released, h.host.source is h.sources[1]

        timed_out, restarted, sources, new_released, new_active = run_scenario(scenario)
        assert timed_out == LivenessStatus.TIMEOUT
        assert restarted == LivenessStatus.CHECKING
        assert len(sources) == 2
        assert sources[0].released
        assert not new_released
        assert new_active

    def test_video_failure_hard_stops(self):
        async def scenario(h):
            await h.host.start_camera()
            h.drain()
            h.sources[0].on_failure("stream ended")
            return h.host.mode, h.host.session, h.host.status, h.drain(), h.sources[0]

        mode, session, status, events, source = run_scenario(scenario)
        assert mode == HostMode.IDLE
        assert session is None
        assert status == LivenessStatus.PENDING
        assert source.released
        assert [e.error for e in events if e.type == "error"] == ["Could not play video."]

    def test_stale_source_failure_ignored(self):
        async def scenario(h):
            await h.host.start_camera()
            await h.host.start_camera()
            h.sources[0].on_failure("old stream ended")
            return h.host.mode, h.host.status

        mode, status = run_scenario(scenario)
        assert mode == HostMode.CAMERA
        assert status == LivenessStatus.CHECKING

    def test_stop_camera(self):
        async def scenario(h):
            await h.host.start_camera()
            await h.host.stop_camera()
            return h.host.mode, h.host.session, h.sources[0]

        mode, session, source = run_scenario(scenario)
        assert mode == HostMode.IDLE
        assert session is None
        assert source.released


# ============================================================
# Upload mode
# ============================================================

class TestUploadMode:

    def test_upload_while_camera_runs(self):
        async def scenario(h):
            await h.host.start_camera()
            analysis = await h.host.submit_upload(jpeg_bytes())
            return h.host.mode, h.host.session, h.host.snapshot(), analysis, h.sources[0]

        mode, session, snap, analysis, source = run_scenario(scenario)
        assert mode == HostMode.IMAGE
        assert session is None
        assert source.released
        assert analysis is not None and analysis.faces[0].age == 34
        assert snap["image"]["origin"] == "upload"
        assert snap["image"]["analysis"]["border_color"] == "lime"

    def test_undecodable_upload_reports_error(self):
        async def scenario(h):
            analysis = await h.host.submit_upload(b"\x00\x01not-an-image")
            return h.host.snapshot(), analysis, h.drain()

        snap, analysis, events = run_scenario(scenario)
        assert analysis is None
        assert snap["image"]["error"] == "Could not decode image."
        assert [e.error for e in events if e.type == "error"] == ["Could not decode image."]


@pytest.mark.parametrize("size", [1, 2])
def test_full_subscriber_drops_oldest(size):
    async def scenario(h):
        small = asyncio.Queue(maxsize=size)
        h.host._ui_subscribers = [small]
        await h.host.start_camera()
        await h.host.submit_upload(b"junk")
        items = []
        while not small.empty():
            items.append(small.get_nowait())
        return items

    items = run_scenario(scenario)
    assert len(items) == size
    assert items[-1].type == "error"


# ============================================================
# Shutdown with a detector call in flight
# ============================================================

class SlowDetector:
    """Detector whose call outlives the poll task that started it."""

    def __init__(self, delay: float = 0.3) -> None:
        self.delay = delay
        self.busy = threading.Event()
        self.calls = 0
        self.closed_while_busy = []

    def classify_with_landmarks(self, frame):
        self.calls += 1
        self.busy.set()
        try:
            time.sleep(self.delay)
        finally:
            self.busy.clear()
        return None

    def close(self):
        self.closed_while_busy.append(self.busy.is_set())


def _slow_host(detector):
    settings = Settings(
        _env_file=None,
        liveness=LivenessSettings(check_interval_ms=5),
    )
    return SessionHost(
        settings=settings,
        detector=detector,
        analyzer=ImageAnalyzer(OneFaceDetector(), settings=settings.analysis),
        source_factory=AsyncFakeSource,
    )


async def _wait_until_busy(detector):
    for _ in range(200):
        if detector.busy.is_set():
            return True
        await asyncio.sleep(0.005)
    return False


class TestInFlightDetector:

    def test_shutdown_waits_for_running_detector_call(self):
        detector = SlowDetector()

        async def scenario():
            host = _slow_host(detector)
            await host.start_camera()
            assert await _wait_until_busy(detector)
            await host.shutdown()
            return host

        host = asyncio.run(scenario())
        assert detector.closed_while_busy == [False]
        assert host.session is None

    def test_restart_waits_before_reusing_detector(self):
        detector = SlowDetector(delay=0.2)

        async def scenario():
            host = _slow_host(detector)
            await host.start_camera()
            assert await _wait_until_busy(detector)
            await host.start_camera()
            busy_after_restart = detector.busy.is_set()
            await host.shutdown()
            return busy_after_restart

        assert asyncio.run(scenario()) is False
