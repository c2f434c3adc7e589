#!/usr/bin/env python3
"""
Live head-pose debugging tool - shows the classified pose per frame.
Use this to tune pose_ratio_high / pose_ratio_low for a camera setup.
"""

from __future__ import annotations

import argparse
import signal
import sys
import time

import cv2

from .config import get_settings
from .pose import LEFT_EYE_OUTER, NOSE_TIP, RIGHT_EYE_OUTER, PoseClassifier
from .sensors.detector import FaceDetector
from .state import HeadPose

POSE_COLORS = {
    HeadPose.CENTER: (0, 255, 0),
    HeadPose.LEFT: (255, 200, 0),
    HeadPose.RIGHT: (0, 200, 255),
    HeadPose.UNKNOWN: (0, 0, 255),
}


class PoseDebugger:
    def __init__(self, camera_id: int, ratio_high: float, ratio_low: float, show_window: bool) -> None:
        self.camera_id = camera_id
        self.show_window = show_window
        self.classifier = PoseClassifier(ratio_high=ratio_high, ratio_low=ratio_low)
        self.detector = FaceDetector(min_confidence=get_settings().detector.min_confidence)
        self.running = True
        signal.signal(signal.SIGINT, self.signal_handler)

    def signal_handler(self, sig, frame):
        print("\n\n🛑 Stopping...")
        self.running = False

    def run(self) -> int:
        cap = cv2.VideoCapture(self.camera_id)
        if not cap.isOpened():
            print(f"❌ Could not open camera {self.camera_id}")
            return 1

        print(f"📷 Camera {self.camera_id} open (high={self.classifier.ratio_high}, low={self.classifier.ratio_low})")
        print("Press Ctrl+C (or q in the window) to exit\n")
        last_pose = None
        try:
            while self.running:
                ret, frame = cap.read()
                if not ret:
                    time.sleep(0.05)
                    continue

                face = self.detector.classify_with_landmarks(frame)
                pose = self.classifier.classify_face(face)
                ratio = self._ratio(face)
                if pose != last_pose:
                    label = pose.value if pose else "no face"
                    ratio_text = f"{ratio:.2f}" if ratio is not None else "-"
                    print(f"{time.strftime('%H:%M:%S')}  pose={label:<8} ratio={ratio_text}")
                    last_pose = pose

                if self.show_window:
                    self._draw(frame, face, pose, ratio)
                    cv2.imshow("headcheck pose debug", frame)
                    if cv2.waitKey(1) & 0xFF == ord("q"):
                        break
        finally:
            cap.release()
            self.detector.close()
            if self.show_window:
                cv2.destroyAllWindows()
        return 0

    @staticmethod
    def _ratio(face):
        if face is None or face.landmarks is None:
            return None
        lm = face.landmarks
        dist_right = abs(float(lm[NOSE_TIP][0] - lm[RIGHT_EYE_OUTER][0]))
        if dist_right < 1:
            return None
        return abs(float(lm[NOSE_TIP][0] - lm[LEFT_EYE_OUTER][0])) / dist_right

    @staticmethod
    def _draw(frame, face, pose, ratio) -> None:
        color = POSE_COLORS.get(pose, (0, 0, 255))
        if face is not None:
            x, y, w, h = face.box
            cv2.rectangle(frame, (x, y), (x + w, y + h), color, 2)
            for idx in (NOSE_TIP, LEFT_EYE_OUTER, RIGHT_EYE_OUTER):
                px, py = face.landmarks[idx]
                cv2.circle(frame, (int(px), int(py)), 3, color, -1)
        text = pose.value if pose else "No Face"
        if ratio is not None:
            text += f"  L/R={ratio:.2f}"
        cv2.putText(frame, text, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.9, color, 2, cv2.LINE_AA)


def main() -> None:
    settings = get_settings().liveness
    parser = argparse.ArgumentParser(description="Live head-pose classifier debug view")
    parser.add_argument("--camera", type=int, default=get_settings().camera.camera_id)
    parser.add_argument("--high", type=float, default=settings.pose_ratio_high)
    parser.add_argument("--low", type=float, default=settings.pose_ratio_low)
    parser.add_argument("--no-window", action="store_true", help="Console output only")
    args = parser.parse_args()

    debugger = PoseDebugger(args.camera, args.high, args.low, show_window=not args.no_window)
    sys.exit(debugger.run())


if __name__ == "__main__":
    main()
