"""Head pose estimate from 68-point facial landmarks."""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .sensors.detector import Face
from .state import HeadPose

logger = logging.getLogger(__name__)

NOSE_TIP = 30
LEFT_EYE_OUTER = 36
RIGHT_EYE_OUTER = 45


class PoseClassifier:
    """
    Compare horizontal nose-to-eye-corner distances.

    ratio = |nose.x - left_eye.x| / |nose.x - right_eye.x|
    ratio > high -> LEFT, ratio < low -> RIGHT, otherwise CENTER.
    The band is noisy near its edges; callers debounce over several ticks.
    """

    def __init__(self, *, ratio_high: float = 1.4, ratio_low: float = 0.7) -> None:
        self.ratio_high = ratio_high
        self.ratio_low = ratio_low

    def estimate(self, landmarks) -> HeadPose:
        try:
            points = np.asarray(landmarks, dtype=np.float32)
            if points.ndim != 2 or points.shape[0] <= RIGHT_EYE_OUTER or points.shape[1] < 2:
                return HeadPose.UNKNOWN
            nose, left_eye, right_eye = points[NOSE_TIP], points[LEFT_EYE_OUTER], points[RIGHT_EYE_OUTER]
            if not np.all(np.isfinite([nose[0], left_eye[0], right_eye[0]])):
                return HeadPose.UNKNOWN

            dist_left = abs(float(nose[0] - left_eye[0]))
            dist_right = abs(float(nose[0] - right_eye[0]))
            if dist_right < 1:
                return HeadPose.CENTER

            ratio = dist_left / dist_right
            logger.debug("Pose ratio (L/R): %.2f (high=%.2f, low=%.2f)", ratio, self.ratio_high, self.ratio_low)
            if ratio > self.ratio_high:
                return HeadPose.LEFT
            if ratio < self.ratio_low:
                return HeadPose.RIGHT
            return HeadPose.CENTER
        except Exception:
            logger.exception("Error estimating head pose")
            return HeadPose.UNKNOWN

    def classify_face(self, face: Optional[Face]) -> Optional[HeadPose]:
        """None when there is no usable face, otherwise the estimated pose."""
        if face is None or face.landmarks is None:
            return None
        return self.estimate(face.landmarks)
