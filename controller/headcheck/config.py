"""Central configuration for the headcheck liveness controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .state import HeadPose

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class LivenessSettings(BaseModel):
    """Head-pose challenge configuration."""
    pose_sequence: List[HeadPose] = Field(
        default_factory=lambda: [HeadPose.CENTER, HeadPose.LEFT, HeadPose.RIGHT, HeadPose.CENTER],
        description="Ordered poses the subject must perform",
    )
    check_interval_ms: int = Field(300, description="Delay between pose classification ticks (ms)")
    timeout_ms: int = Field(20000, description="Deadline for completing the whole sequence (ms)")
    capture_delay_ms: int = Field(750, description="Hold-still delay before the photo is taken (ms)")
    feedback_duration_ms: int = Field(400, description="Length of the success flash after each step (ms)")
    pose_hold_checks: int = Field(2, description="Consecutive matching ticks needed to complete a step")
    step_transition_delay_ms: int = Field(600, description="Pause between a completed step and the next (ms)")
    pose_ratio_high: float = Field(1.4, description="Nose/eye ratio above which the pose reads as LEFT")
    pose_ratio_low: float = Field(0.7, description="Nose/eye ratio below which the pose reads as RIGHT")

    @field_validator("pose_sequence", mode="before")
    @classmethod
    def _parse_sequence(cls, value: object) -> object:
        # Accept "Center,Left,Right" from the environment
        if isinstance(value, str):
            return [item.strip().capitalize() for item in value.split(",") if item.strip()]
        return value

    @field_validator("pose_sequence")
    @classmethod
    def _check_sequence(cls, value: List[HeadPose]) -> List[HeadPose]:
        if not value:
            raise ValueError("pose_sequence must contain at least one pose")
        if HeadPose.UNKNOWN in value:
            raise ValueError("pose_sequence may only contain concrete poses")
        return value

    @field_validator(
        "check_interval_ms",
        "timeout_ms",
        "capture_delay_ms",
        "feedback_duration_ms",
        "pose_hold_checks",
        "step_transition_delay_ms",
    )
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_ratio_band(self) -> "LivenessSettings":
        if self.pose_ratio_low >= self.pose_ratio_high:
            raise ValueError("pose_ratio_low must be below pose_ratio_high")
        return self


class DetectorSettings(BaseModel):
    """Face detector configuration."""
    min_confidence: float = Field(0.6, description="MediaPipe face detection confidence threshold (0-1)")
    max_faces: int = Field(5, description="Maximum faces reported for a still image")


class AnalysisSettings(BaseModel):
    """Still-image age/gender review configuration."""
    enable_age_gender: bool = Field(True, description="Run the age/gender estimator on captured photos")
    age_threshold: int = Field(18, description="Age at or above which the adult border colour is used")
    border_color_adult: str = Field("lime", description="Border colour for age >= threshold")
    border_color_minor: str = Field("red", description="Border colour for age < threshold")
    border_width: str = Field("4px", description="Border width hint for UI clients")


class CameraSettings(BaseModel):
    """Webcam configuration."""
    camera_id: int = Field(0, description="OpenCV camera index")
    resolution_width: int = Field(640, description="Requested stream width (pixels)")
    resolution_height: int = Field(480, description="Requested stream height (pixels)")
    fps: int = Field(30, description="Requested capture frame rate")
    jpeg_quality: int = Field(92, description="JPEG quality for the captured photo")
    preview_jpeg_quality: int = Field(80, description="JPEG quality for MJPEG preview frames")
    preview_frame_skip: int = Field(2, description="Encode preview every Nth frame (higher = less CPU)")
    first_frame_timeout_s: float = Field(5.0, description="Max wait for the first readable frame")
    max_failed_reads: int = Field(30, description="Consecutive failed reads before the stream counts as ended")


class PerformanceSettings(BaseModel):
    """Queue tuning."""
    ui_event_queue_size: int = Field(16, description="Max buffered UI events per subscriber")
    preview_queue_size: int = Field(2, description="Max buffered preview JPEG frames")
    detector_drain_timeout_s: float = Field(2.0, description="Max wait for an in-flight detector call on stop")


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Controller HTTP Server
    controller_host: str = Field("127.0.0.1", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")
    log_liveness_level: Optional[str] = Field(None, description="Level for session/timer/pose loggers (DEBUG shows every tick)")

    # Captures
    save_captures: bool = Field(False, description="Write captured photos to captures_directory")
    captures_directory: Path = Field(ROOT_DIR / "captures", description="Directory for captured photos")

    # Nested Configuration Objects
    liveness: LivenessSettings = Field(default_factory=LivenessSettings, description="Liveness challenge settings")
    detector: DetectorSettings = Field(default_factory=DetectorSettings, description="Face detector settings")
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings, description="Still-image review settings")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Webcam settings")
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings, description="Performance tuning")

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
