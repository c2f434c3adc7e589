"""
Tests for the still-image age/gender review

Usage:
    pytest tests/test_analysis.py -v
"""

import cv2
import numpy as np
import pytest

from headcheck.analysis import (
    AnalysisError,
    FaceReport,
    ImageAnalyzer,
    border_color_for,
    decode_image,
)
from headcheck.config import AnalysisSettings
from headcheck.sensors.detector import DetectionResult, Face


def jpeg_bytes(width: int = 200, height: int = 150) -> bytes:
    image = np.full((height, width, 3), 90, dtype=np.uint8)
    ok, encoded = cv2.imencode(".jpg", image)
    assert ok
    return encoded.tobytes()


class StaticDetector:
    def __init__(self, *boxes):
        self.boxes = boxes
        self.calls = 0

    def classify(self, frame):
        self.calls += 1
        return DetectionResult(faces=[Face(box=box) for box in self.boxes])


class BrokenDetector:
    def classify(self, frame):
        raise RuntimeError("model crashed")


class FixedEstimator:
    def __init__(self, *results):
        self.results = list(results)
        self.crops = []

    def estimate(self, face_image):
        self.crops.append(face_image.shape)
        return self.results.pop(0)


class FailingEstimator:
    def estimate(self, face_image):
        raise ValueError("weights missing")


# ============================================================
# Helpers
# ============================================================

class TestHelpers:

    def test_decode_valid_jpeg(self):
        image = decode_image(jpeg_bytes(120, 80))
        assert image.shape == (80, 120, 3)

    def test_decode_empty(self):
        with pytest.raises(AnalysisError, match="Empty image."):
            decode_image(b"")

    def test_decode_garbage(self):
        with pytest.raises(AnalysisError, match="Could not decode image."):
            decode_image(b"definitely not a jpeg")

    @pytest.mark.parametrize(
        "age,expected",
        [(30, "lime"), (18, "lime"), (17, "red"), (3, "red"), (None, None)],
    )
    def test_border_color(self, age, expected):
        assert border_color_for(age, AnalysisSettings()) == expected

    def test_face_label(self):
        assert FaceReport(box=(0, 0, 1, 1)).label == "face"
        assert FaceReport(box=(0, 0, 1, 1), age=31, gender="female").label == "female (~31 yrs)"


# ============================================================
# ImageAnalyzer
# ============================================================

class TestImageAnalyzer:

    def test_adult_first_face_gets_lime_border(self):
        estimator = FixedEstimator((30.4, "male", 0.97), (12.0, "female", 0.81))
        analyzer = ImageAnalyzer(
            StaticDetector((10, 10, 50, 60), (100, 20, 40, 40)),
            estimator=estimator,
        )
        result = analyzer.analyze_bytes(jpeg_bytes())

        assert (result.width, result.height) == (200, 150)
        assert [f.age for f in result.faces] == [30, 12]
        assert result.border_color == "lime"
        assert result.border_width == "4px"
        assert estimator.crops == [(60, 50, 3), (40, 40, 3)]

    def test_minor_first_face_gets_red_border(self):
        analyzer = ImageAnalyzer(StaticDetector((10, 10, 50, 60)), estimator=FixedEstimator((12.0, "female", 0.9)))
        assert analyzer.analyze_bytes(jpeg_bytes()).border_color == "red"

    def test_custom_threshold_and_colors(self):
        settings = AnalysisSettings(age_threshold=21, border_color_adult="green", border_color_minor="orange")
        analyzer = ImageAnalyzer(
            StaticDetector((10, 10, 50, 60)),
            settings=settings,
            estimator=FixedEstimator((19.0, "male", 0.6)),
        )
        assert analyzer.analyze_bytes(jpeg_bytes()).border_color == "orange"

    def test_no_faces(self):
        analyzer = ImageAnalyzer(StaticDetector())
        with pytest.raises(AnalysisError, match="No faces detected."):
            analyzer.analyze_bytes(jpeg_bytes())

    def test_detector_crash(self):
        analyzer = ImageAnalyzer(BrokenDetector())
        with pytest.raises(AnalysisError, match="Detection error."):
            analyzer.analyze_bytes(jpeg_bytes())

    def test_estimator_failure_keeps_face_without_border(self):
        analyzer = ImageAnalyzer(StaticDetector((10, 10, 50, 60)), estimator=FailingEstimator())
        result = analyzer.analyze_bytes(jpeg_bytes())
        assert len(result.faces) == 1
        assert result.faces[0].age is None
        assert result.border_color is None
        assert result.border_width is None

    def test_estimation_disabled(self):
        estimator = FixedEstimator((40.0, "male", 0.9))
        analyzer = ImageAnalyzer(
            StaticDetector((10, 10, 50, 60)),
            settings=AnalysisSettings(enable_age_gender=False),
            estimator=estimator,
        )
        result = analyzer.analyze_bytes(jpeg_bytes())
        assert result.faces[0].age is None
        assert estimator.crops == []

    def test_to_dict(self):
        analyzer = ImageAnalyzer(StaticDetector((10, 10, 50, 60)), estimator=FixedEstimator((25.0, "female", 0.876)))
        payload = analyzer.analyze_bytes(jpeg_bytes()).to_dict()
        assert payload["border_color"] == "lime"
        face = payload["faces"][0]
        assert face["box"] == [10, 10, 50, 60]
        assert face["label"] == "female (~25 yrs)"
        assert face["gender_probability"] == 0.876
