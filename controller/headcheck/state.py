"""Shared state definitions for the headcheck liveness controller."""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Sequence


class HeadPose(str, enum.Enum):
    """Discrete head orientation reported by the pose classifier."""
    CENTER = "Center"
    LEFT = "Left"
    RIGHT = "Right"
    UNKNOWN = "Unknown"


class LivenessStatus(str, enum.Enum):
    """
    Liveness session statuses:

    PENDING        - No active stream/classification
    CHECKING       - Polling frames, waiting for the required pose to be held
    TRANSITIONING  - Step just succeeded; classification suspended briefly
    HOLD_STILL     - Whole sequence done; subject holds still before capture
    CAPTURING      - Still photo is being produced
    CONFIRMED      - Guard value; liveness satisfied (superseded by HOLD_STILL)
    FAILED         - Capture or runtime failure (terminal)
    TIMEOUT        - Sequence deadline elapsed (terminal)
    """
    PENDING = "Pending"
    CHECKING = "Checking"
    TRANSITIONING = "Transitioning"
    HOLD_STILL = "HoldStill"
    CAPTURING = "Capturing"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    TIMEOUT = "Timeout"


# Statuses past the point where the timeout may still fire
COMPLETING_STATUSES = frozenset({LivenessStatus.CONFIRMED, LivenessStatus.HOLD_STILL, LivenessStatus.CAPTURING})
TERMINAL_STATUSES = frozenset({LivenessStatus.FAILED, LivenessStatus.TIMEOUT})
POLLING_STATUSES = frozenset({LivenessStatus.CHECKING, LivenessStatus.TRANSITIONING})


class TimerKind(str, enum.Enum):
    """Named timers owned by a liveness session."""
    SEQUENCE_TIMEOUT = "sequence_timeout"
    STEP_TRANSITION = "step_transition"
    CAPTURE_DELAY = "capture_delay"
    FEEDBACK_FLASH = "feedback_flash"


@dataclass
class SessionState:
    """Single source of truth for one liveness attempt."""

    status: LivenessStatus = LivenessStatus.PENDING
    current_step_index: int = 0
    hold_counter: int = 0
    guidance_message: str = ""
    is_transitioning: bool = False
    is_capture_pending: bool = False
    show_success_feedback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass
class HostEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    status: LivenessStatus
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def step_guidance(step_index: int, sequence: Sequence[HeadPose], *, no_face: bool = False) -> str:
    """Instruction for the pose required at ``step_index``."""
    if step_index >= len(sequence):
        return "Sequence already complete?"
    pose = sequence[step_index].value.upper()
    prefix = f"({step_index + 1}/{len(sequence)})"
    if no_face:
        return f"{prefix} No face detected. Please look {pose}"
    return f"{prefix} Please look {pose}"


def status_message(state: SessionState) -> str:
    """Display text for the current status (falls back to the stored guidance)."""
    status = state.status
    if status == LivenessStatus.CHECKING:
        return state.guidance_message or "Checking liveness..."
    if status == LivenessStatus.TRANSITIONING:
        return state.guidance_message or "Great!"
    if status == LivenessStatus.HOLD_STILL:
        return "Liveness Confirmed! Hold Still..."
    if status == LivenessStatus.CONFIRMED:
        return "Liveness Confirmed! Preparing Capture..."
    if status == LivenessStatus.CAPTURING:
        return "Capturing photo..."
    if status == LivenessStatus.FAILED:
        return "Liveness check failed."
    if status == LivenessStatus.TIMEOUT:
        return "Liveness check timed out. Please try again."
    return ""


__all__ = [
    "COMPLETING_STATUSES",
    "HeadPose",
    "HostEvent",
    "LivenessStatus",
    "POLLING_STATUSES",
    "SessionState",
    "TERMINAL_STATUSES",
    "TimerKind",
    "status_message",
    "step_guidance",
]
