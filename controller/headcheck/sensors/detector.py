"""
MediaPipe face detector exposing the 68-point landmark layout.

FaceMesh returns 468 normalised points per face. The pose classifier and the
still-image review both work on the classic 68-point layout (jaw 0-16,
brows 17-26, nose 27-35, eyes 36-47, mouth 48-67), so every mesh is projected
through ``MESH_TO_68`` before it leaves this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

# Optional deps
try:
    import cv2  # type: ignore
except Exception:
    cv2 = None

try:
    import mediapipe as mp  # type: ignore
except Exception:
    mp = None


logger = logging.getLogger(__name__)

# FaceMesh vertex for each of the 68 classic landmark slots
MESH_TO_68: Tuple[int, ...] = (
    # jaw
    162, 234, 93, 58, 172, 136, 149, 148, 152, 377, 378, 365, 397, 288, 323, 454, 389,
    # brows
    71, 63, 105, 66, 107, 336, 296, 334, 293, 301,
    # nose
    168, 197, 5, 4, 75, 97, 2, 326, 305,
    # eyes
    33, 160, 158, 133, 153, 144, 362, 385, 387, 263, 373, 380,
    # mouth
    61, 39, 37, 0, 267, 269, 291, 405, 314, 17, 84, 181, 78, 82, 13, 312, 308, 317, 14, 87,
)

Box = Tuple[int, int, int, int]  # x, y, width, height


@dataclass
class Face:
    """One detected face in pixel coordinates."""
    box: Box
    landmarks: Optional[np.ndarray] = None  # (68, 2) float32

    @property
    def area(self) -> int:
        return int(self.box[2]) * int(self.box[3])


@dataclass
class DetectionResult:
    faces: List[Face] = field(default_factory=list)


class DetectorUnavailableError(RuntimeError):
    """Raised when OpenCV/MediaPipe are missing."""


def project_mesh(mesh_landmarks, image_width: int, image_height: int) -> Tuple[Box, np.ndarray]:
    """Convert one FaceMesh landmark list to (box, 68x2 landmarks) in pixels."""
    points = mesh_landmarks.landmark
    xs = np.fromiter((lm.x for lm in points), dtype=np.float32) * image_width
    ys = np.fromiter((lm.y for lm in points), dtype=np.float32) * image_height

    x_min = max(int(xs.min()), 0)
    y_min = max(int(ys.min()), 0)
    x_max = min(int(np.ceil(xs.max())), image_width)
    y_max = min(int(np.ceil(ys.max())), image_height)
    box = (x_min, y_min, max(x_max - x_min, 0), max(y_max - y_min, 0))

    index = np.asarray(MESH_TO_68)
    landmarks = np.stack([xs[index], ys[index]], axis=1)
    return box, landmarks


class FaceDetector:
    """FaceMesh wrapper; not thread-safe, one caller at a time."""

    def __init__(
        self,
        *,
        min_confidence: float = 0.6,
        max_faces: int = 1,
        static_image_mode: bool = False,
    ) -> None:
        self.min_confidence = min_confidence
        self.max_faces = max_faces
        self.static_image_mode = static_image_mode
        self._face_mesh = None

    @property
    def available(self) -> bool:
        return cv2 is not None and mp is not None

    def _ensure_mesh(self):
        if self._face_mesh is None:
            if not self.available:
                raise DetectorUnavailableError("OpenCV or MediaPipe not available")
            self._face_mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=self.static_image_mode,
                max_num_faces=self.max_faces,
                refine_landmarks=False,
                min_detection_confidence=self.min_confidence,
                min_tracking_confidence=self.min_confidence,
            )
            logger.info(
                "FaceMesh ready (static=%s, max_faces=%d, confidence=%.2f)",
                self.static_image_mode,
                self.max_faces,
                self.min_confidence,
            )
        return self._face_mesh

    def classify(self, frame: np.ndarray) -> DetectionResult:
        """Detect every face in a BGR frame."""
        mesh = self._ensure_mesh()
        h, w = frame.shape[:2]
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        result = mesh.process(rgb_frame)
        if not result or not result.multi_face_landmarks:
            return DetectionResult()

        faces = []
        for face_landmarks in result.multi_face_landmarks:
            box, landmarks = project_mesh(face_landmarks, w, h)
            faces.append(Face(box=box, landmarks=landmarks))
        return DetectionResult(faces=faces)

    def classify_with_landmarks(self, frame: np.ndarray) -> Optional[Face]:
        """Best (largest) face with its 68 landmarks, or None."""
        faces = [face for face in self.classify(frame).faces if face.landmarks is not None]
        if not faces:
            return None
        return max(faces, key=lambda face: face.area)

    def close(self) -> None:
        if self._face_mesh is not None:
            self._face_mesh.close()
            self._face_mesh = None
