"""
FocusMochi — Focus Calculator
=============================
Scores how attentive the user looks from one face detection.

Five factors, each normalized to [0, 1]:
  - face confidence
  - yaw   (left/right head turn)
  - pitch (nodding up/down)
  - roll  (head tilt)
  - face size vs. the ideal distance from the screen

A missing face, or one below min_face_confidence, is a hard floor of
(0.0, False) rather than a low score.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from mochi_config import FocusCalculatorConfig
from mochi_types import FaceDetection

_log = logging.getLogger("MochiFocus")


class FocusCalculator:
    """Weighted attentiveness score from a FaceDetection."""

    def __init__(self, config: Optional[FocusCalculatorConfig] = None):
        self.config = config or FocusCalculatorConfig()

    @classmethod
    def with_defaults(cls) -> "FocusCalculator":
        return cls(FocusCalculatorConfig())

    def calculate(self, detection: Optional[FaceDetection]) -> Tuple[float, bool]:
        """Compute the focus score.

        Args:
            detection: Primary face, or None when no face was found.

        Returns:
            (focus_score in [0, 1], face_detected)
        """
        cfg = self.config
        if detection is None or detection.confidence < cfg.min_face_confidence:
            return 0.0, False

        conf_score = detection.confidence

        yaw = detection.estimate_yaw()
        yaw_score = 1.0 - min(abs(yaw) / cfg.max_yaw, 1.0)

        pitch = detection.estimate_pitch()
        pitch_score = 1.0 - min(abs(pitch) / cfg.max_pitch, 1.0)

        roll = detection.estimate_roll()
        roll_score = 1.0 - min(abs(roll) / cfg.max_roll, 1.0)

        face_size = detection.size()
        size_diff = abs(face_size - cfg.ideal_face_size)
        size_score = max(1.0 - size_diff / cfg.ideal_face_size, 0.0)

        focus_score = (
            cfg.face_confidence_weight * conf_score
            + cfg.yaw_weight * yaw_score
            + cfg.pitch_weight * pitch_score
            + cfg.roll_weight * roll_score
            + cfg.face_size_weight * size_score
        )
        focus_score = min(max(focus_score, 0.0), 1.0)

        _log.debug(
            "Focus calculation: conf=%.2f, yaw=%.1f(%.2f), pitch=%.1f(%.2f), "
            "roll=%.1f(%.2f), size=%.3f(%.2f) => %.2f",
            conf_score, yaw, yaw_score, pitch, pitch_score,
            roll, roll_score, face_size, size_score, focus_score,
        )

        return focus_score, True
