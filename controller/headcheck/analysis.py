"""Single-shot age/gender review of a captured or uploaded photo."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .config import AnalysisSettings
from .sensors.detector import Box, DetectionResult

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    """Raised when a still image cannot be decoded or holds no faces."""


class StillDetector(Protocol):
    def classify(self, frame: np.ndarray) -> DetectionResult: ...


class AgeGenderEstimator(Protocol):
    def estimate(self, face_image: np.ndarray) -> Optional[Tuple[float, str, float]]:
        """Return (age, gender, gender_probability) for a cropped BGR face."""
        ...


@dataclass
class FaceReport:
    box: Box
    age: Optional[int] = None
    gender: Optional[str] = None
    gender_probability: Optional[float] = None

    @property
    def label(self) -> str:
        if self.age is None or self.gender is None:
            return "face"
        return f"{self.gender} (~{self.age} yrs)"


@dataclass
class ImageAnalysis:
    width: int
    height: int
    faces: List[FaceReport] = field(default_factory=list)
    border_color: Optional[str] = None
    border_width: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for face, report in zip(payload["faces"], self.faces):
            face["box"] = list(report.box)
            face["label"] = report.label
        return payload


class DeepFaceEstimator:
    """Age/gender through DeepFace on an already-cropped face."""

    def __init__(self, *, enforce_detection: bool = False) -> None:
        self.enforce_detection = enforce_detection

    def estimate(self, face_image: np.ndarray) -> Optional[Tuple[float, str, float]]:
        from deepface import DeepFace

        results = DeepFace.analyze(
            img_path=face_image,
            actions=["age", "gender"],
            enforce_detection=self.enforce_detection,
            detector_backend="skip",
            silent=True,
        )
        if isinstance(results, dict):
            results = [results]
        if not results:
            return None

        first = results[0]
        scores = first.get("gender") or {}
        dominant = first.get("dominant_gender")
        if not dominant or dominant not in scores:
            return None
        # DeepFace reports "Man"/"Woman" percentages
        gender = "male" if dominant.lower().startswith("m") else "female"
        return float(first["age"]), gender, float(scores[dominant]) / 100.0


def decode_image(data: bytes) -> np.ndarray:
    if not data:
        raise AnalysisError("Empty image.")
    arr = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if image is None:
        raise AnalysisError("Could not decode image.")
    return image


def border_color_for(age: Optional[int], settings: AnalysisSettings) -> Optional[str]:
    if age is None:
        return None
    return settings.border_color_adult if age >= settings.age_threshold else settings.border_color_minor


class ImageAnalyzer:
    """Detect all faces in a still and attach age/gender when available."""

    def __init__(
        self,
        detector: StillDetector,
        *,
        settings: Optional[AnalysisSettings] = None,
        estimator: Optional[AgeGenderEstimator] = None,
    ) -> None:
        self.detector = detector
        self.settings = settings or AnalysisSettings()
        self.estimator = estimator

    def analyze_bytes(self, data: bytes) -> ImageAnalysis:
        return self.analyze(decode_image(data))

    def analyze(self, image: np.ndarray) -> ImageAnalysis:
        h, w = image.shape[:2]
        try:
            detections = self.detector.classify(image)
        except Exception as exc:
            logger.exception("Static face detection failed")
            raise AnalysisError("Detection error.") from exc

        logger.info("Static detections found: %d", len(detections.faces))
        if not detections.faces:
            raise AnalysisError("No faces detected.")

        reports = [self._report(image, face.box) for face in detections.faces]
        analysis = ImageAnalysis(width=int(w), height=int(h), faces=reports)

        # Border colour follows the first detected face
        analysis.border_color = border_color_for(reports[0].age, self.settings)
        if analysis.border_color is not None:
            analysis.border_width = self.settings.border_width
            logger.info("First detected age: %s -> border %s", reports[0].age, analysis.border_color)
        return analysis

    def _report(self, image: np.ndarray, box: Box) -> FaceReport:
        report = FaceReport(box=tuple(int(v) for v in box))
        if self.estimator is None or not self.settings.enable_age_gender:
            return report

        x, y, bw, bh = report.box
        crop = image[max(y, 0):y + bh, max(x, 0):x + bw]
        if crop.size == 0:
            return report
        try:
            estimate = self.estimator.estimate(crop)
        except Exception:
            logger.exception("Age/gender estimation failed for box %s", report.box)
            return report
        if estimate is None:
            return report

        age, gender, probability = estimate
        report.age = int(round(age))
        report.gender = gender
        report.gender_probability = round(float(probability), 3)
        return report
