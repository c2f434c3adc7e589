"""
Shared fixtures for the headcheck test suite.

The liveness session is driven without a camera or MediaPipe:
- ManualScheduler replaces loop.call_later so timers fire only on advance()
- FakeSource stands in for the webcam
- ScriptedDetector returns faces posed according to a queue of HeadPose values
"""

import asyncio
from collections import deque
from typing import Callable, List, Optional

import numpy as np
import pytest

from headcheck.config import LivenessSettings
from headcheck.liveness_session import LivenessSession
from headcheck.sensors.detector import Face
from headcheck.state import HeadPose, HostEvent


NOSE_X = 100.0
RIGHT_EYE_X = 130.0
# Left eye corner x giving ratios ~1.0 (center), ~1.67 (left), ~0.5 (right)
LEFT_EYE_X = {
    HeadPose.CENTER: 70.0,
    HeadPose.LEFT: 50.0,
    HeadPose.RIGHT: 85.0,
}


def landmarks_for(pose: HeadPose) -> np.ndarray:
    """68-point landmark array the PoseClassifier reads as ``pose``."""
    points = np.zeros((68, 2), dtype=np.float32)
    points[:, 1] = 120.0
    points[30] = (NOSE_X, 140.0)
    points[45] = (RIGHT_EYE_X, 110.0)
    if pose == HeadPose.UNKNOWN:
        points[36] = (np.nan, 110.0)
    else:
        points[36] = (LEFT_EYE_X[pose], 110.0)
    return points


def face_for(pose: HeadPose) -> Face:
    return Face(box=(40, 60, 120, 140), landmarks=landmarks_for(pose))


class ManualHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic stand-in for loop.call_later."""

    def __init__(self) -> None:
        self.now = 0.0
        self.handles: List[ManualHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> List[ManualHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self.pending if h.due <= target + 1e-9]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self.now = handle.due
            handle.fired = True
            handle.callback()
        self.now = target


class FakeSource:
    """Live frame source that can be paused, ended or emptied."""

    def __init__(self, width: int = 64, height: int = 48) -> None:
        self.frame: Optional[np.ndarray] = np.full((height, width, 3), 127, dtype=np.uint8)
        self.live = True
        self.release_calls = 0
        self.on_failure = None

    @property
    def is_live(self) -> bool:
        return self.live

    def read_frame(self) -> Optional[np.ndarray]:
        return self.frame if self.live else None

    def release(self) -> None:
        self.release_calls += 1
        self.live = False

    @property
    def released(self) -> bool:
        return self.release_calls > 0


class ScriptedDetector:
    """Returns one scripted face per call; None entries mean 'no face'."""

    def __init__(self) -> None:
        self.script: deque = deque()
        self.calls = 0

    def push(self, *poses: Optional[HeadPose]) -> None:
        self.script.extend(poses)

    def classify_with_landmarks(self, frame: np.ndarray) -> Optional[Face]:
        self.calls += 1
        pose = self.script.popleft() if self.script else None
        return face_for(pose) if pose is not None else None


class SessionHarness:
    """Bundles a session with its fakes and recorded outputs."""

    def __init__(self, settings: LivenessSettings) -> None:
        self.settings = settings
        self.scheduler = ManualScheduler()
        self.source = FakeSource()
        self.detector = ScriptedDetector()
        self.events: List[HostEvent] = []
        self.captures = []
        self.session = LivenessSession(
            settings=settings,
            source=self.source,
            detector=self.detector,
            scheduler=self.scheduler,
            on_event=self.events.append,
            on_capture=self.captures.append,
        )

    @property
    def state(self):
        return self.session.state

    def start(self) -> None:
        self.session.start(poll=False)

    def tick(self) -> bool:
        return asyncio.run(self.session.tick())

    def feed(self, *poses: Optional[HeadPose]) -> None:
        """One tick per pose."""
        for pose in poses:
            self.detector.push(pose)
            self.tick()

    def complete_step(self, pose: HeadPose) -> None:
        self.feed(*([pose] * self.settings.pose_hold_checks))

    def events_of(self, event_type: str) -> List[HostEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def liveness_settings() -> LivenessSettings:
    return LivenessSettings()


@pytest.fixture
def harness(liveness_settings) -> SessionHarness:
    return SessionHarness(liveness_settings)


@pytest.fixture
def started(harness) -> SessionHarness:
    harness.start()
    return harness
