"""
FocusMochi — Shared Types
=========================
Data classes and enums passed between the vision pipeline, the mood
state machine and the host facade.

  - CapturedFrame: one RGB frame from a FrameSource
  - FaceDetection: one decoded BlazeFace detection (+ head-pose heuristics)
  - FocusState:    per-cycle attentiveness snapshot
  - PetMood / FocusLevel / GestureType: state machine vocabulary
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np


# Landmark order produced by BlazeFace
RIGHT_EYE, LEFT_EYE, NOSE, MOUTH, RIGHT_EAR, LEFT_EAR = range(6)
NUM_LANDMARKS = 6


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds."""
    return int(time.time() * 1000)


# ═══════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════

class PetMood(str, Enum):
    """Externally visible emotional state of the pet."""
    IDLE = "idle"
    HAPPY = "happy"
    EXCITED = "excited"
    SAD = "sad"
    SLEEPY = "sleepy"
    INTERACT = "interact"


class FocusLevel(str, Enum):
    """Hysteretic attentiveness level derived from the smoothed score."""
    AWAY = "away"
    DISTRACTED = "distracted"
    FOCUSED = "focused"


class GestureType(str, Enum):
    WAVE = "wave"
    HEART = "heart"
    OK = "ok"
    THUMBS_UP = "thumbs_up"

    @classmethod
    def parse(cls, name: str) -> "GestureType":
        """Parse a gesture name from the host ("thumbsup" is accepted too)."""
        key = name.strip().lower()
        if key == "thumbsup":
            key = "thumbs_up"
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown gesture: {name}") from None


# ═══════════════════════════════════════════════════════════════
# Frames
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CapturedFrame:
    """One captured RGB frame.

    Attributes:
        width: Frame width in pixels.
        height: Frame height in pixels.
        data: uint8 RGB pixels, row-major, ``height * width * 3`` elements.
        timestamp_ms: Capture time (wall clock, ms).
    """
    width: int
    height: int
    data: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.uint8))
    timestamp_ms: int = 0

    @classmethod
    def empty(cls) -> "CapturedFrame":
        """The "no frame yet" sentinel."""
        return cls(width=0, height=0)

    def is_empty(self) -> bool:
        return self.data.size == 0

    def to_rgb_image(self) -> Optional[np.ndarray]:
        """Return an (H, W, 3) view of the pixels, or None for an empty frame."""
        if self.is_empty():
            return None
        return np.asarray(self.data, dtype=np.uint8).reshape(self.height, self.width, 3)


# ═══════════════════════════════════════════════════════════════
# Face detection
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FaceDetection:
    """A single face decoded from BlazeFace output.

    Attributes:
        confidence: Detection confidence [0.0, 1.0].
        bbox: (x_min, y_min, x_max, y_max), normalized to [0, 1].
        landmarks: six normalized (x, y) points in the order
                   right eye, left eye, nose, mouth, right ear, left ear.
    """
    confidence: float
    bbox: Tuple[float, float, float, float]
    landmarks: Tuple[Tuple[float, float], ...] = ((0.0, 0.0),) * NUM_LANDMARKS

    def center(self) -> Tuple[float, float]:
        x1, y1, x2, y2 = self.bbox
        return (x1 + x2) / 2.0, (y1 + y2) / 2.0

    def size(self) -> float:
        """Face area as a fraction of the frame."""
        x1, y1, x2, y2 = self.bbox
        return (x2 - x1) * (y2 - y1)

    # ── Head pose heuristics (degrees, uncalibrated) ──────────

    def estimate_yaw(self) -> float:
        """Left/right turn from the eye midpoint offset. Positive = turned right."""
        right_eye_x = self.landmarks[RIGHT_EYE][0]
        left_eye_x = self.landmarks[LEFT_EYE][0]
        face_cx, _ = self.center()
        eyes_center_x = (right_eye_x + left_eye_x) / 2.0
        return (eyes_center_x - face_cx) * 90.0

    def estimate_pitch(self) -> float:
        """Nod from the nose-to-eyes vertical distance. Positive = head down."""
        right_eye_y = self.landmarks[RIGHT_EYE][1]
        left_eye_y = self.landmarks[LEFT_EYE][1]
        nose_y = self.landmarks[NOSE][1]
        eyes_center_y = (right_eye_y + left_eye_y) / 2.0
        # ~0.1 is the resting nose offset
        return (nose_y - eyes_center_y - 0.1) * 150.0

    def estimate_roll(self) -> float:
        """Head tilt from the slope of the eye line."""
        right_eye_x, right_eye_y = self.landmarks[RIGHT_EYE]
        left_eye_x, left_eye_y = self.landmarks[LEFT_EYE]
        return math.degrees(math.atan2(left_eye_y - right_eye_y, left_eye_x - right_eye_x))

    def head_pose(self) -> Tuple[float, float, float]:
        """(yaw, pitch, roll) in degrees."""
        return self.estimate_yaw(), self.estimate_pitch(), self.estimate_roll()


# ═══════════════════════════════════════════════════════════════
# Published snapshots
# ═══════════════════════════════════════════════════════════════

@dataclass
class FocusState:
    """Attentiveness snapshot published once per pipeline cycle."""
    face_present: bool = False
    face_confidence: float = 0.0
    focus_score: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    timestamp_ms: int = 0

    @classmethod
    def from_detection(
        cls,
        detection: Optional[FaceDetection],
        focus_score: float,
    ) -> "FocusState":
        if detection is None:
            return cls(timestamp_ms=now_ms())
        return cls(
            face_present=True,
            face_confidence=detection.confidence,
            focus_score=focus_score,
            yaw=detection.estimate_yaw(),
            pitch=detection.estimate_pitch(),
            roll=detection.estimate_roll(),
            timestamp_ms=now_ms(),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FocusStats:
    """Daily focus counters reported to the host."""
    total_focus_ms: int
    current_mood: PetMood
    focus_level: FocusLevel
    focus_score: float

    def to_dict(self) -> dict:
        d = asdict(self)
        d["current_mood"] = self.current_mood.value
        d["focus_level"] = self.focus_level.value
        return d
