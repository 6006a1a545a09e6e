"""
FocusMochi — Focus Calculator Tests
===================================
Hand-built FaceDetection objects; no model involved.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mochi_config import FocusCalculatorConfig
from mochi_focus import FocusCalculator
from mochi_types import FaceDetection

# Face area 0.4 * 0.375 == 0.15 (the ideal size), centred, level eyes
FRONTAL_BBOX = (0.30, 0.20, 0.70, 0.575)
FRONTAL_LANDMARKS = (
    (0.40, 0.32),  # right eye
    (0.60, 0.32),  # left eye
    (0.50, 0.42),  # nose
    (0.50, 0.50),  # mouth
    (0.28, 0.35),  # right ear
    (0.72, 0.35),  # left ear
)


def _frontal(confidence: float = 0.95) -> FaceDetection:
    return FaceDetection(confidence, FRONTAL_BBOX, FRONTAL_LANDMARKS)


def test_no_face_is_exact_floor():
    assert FocusCalculator.with_defaults().calculate(None) == (0.0, False)


def test_low_confidence_is_exact_floor():
    calc = FocusCalculator.with_defaults()
    assert calc.calculate(_frontal(confidence=0.3)) == (0.0, False)


def test_frontal_face_scores_high():
    score, present = FocusCalculator.with_defaults().calculate(_frontal())
    assert present is True
    assert score > 0.6
    # every factor is (close to) perfect except confidence
    assert score == pytest.approx(0.3 * 0.95 + 0.25 + 0.2 + 0.1 + 0.15, abs=1e-6)


def test_head_pose_of_frontal_face():
    yaw, pitch, roll = _frontal().head_pose()
    assert yaw == pytest.approx(0.0, abs=1e-9)
    assert pitch == pytest.approx(0.0, abs=1e-6)
    assert roll == pytest.approx(0.0, abs=1e-9)


def test_turned_head_scores_lower():
    calc = FocusCalculator.with_defaults()
    frontal, _ = calc.calculate(_frontal())

    # eyes pushed towards the right edge of the box -> yaw ~ 18 degrees
    turned_landmarks = ((0.60, 0.32), (0.80, 0.32)) + FRONTAL_LANDMARKS[2:]
    turned = FaceDetection(0.95, FRONTAL_BBOX, turned_landmarks)
    assert turned.estimate_yaw() == pytest.approx(18.0)

    score, present = calc.calculate(turned)
    assert present is True
    assert score < frontal


def test_tilted_and_corner_faces_score_lower():
    calc = FocusCalculator.with_defaults()
    frontal, _ = calc.calculate(_frontal())

    tilted_landmarks = ((0.40, 0.40), (0.60, 0.30)) + FRONTAL_LANDMARKS[2:]
    tilted = FaceDetection(0.95, FRONTAL_BBOX, tilted_landmarks)
    assert abs(tilted.estimate_roll()) > 20.0
    assert calc.calculate(tilted)[0] < frontal

    # tiny face in the corner, far from the screen
    corner = FaceDetection(
        0.95,
        (0.0, 0.0, 0.1, 0.1),
        ((0.03, 0.03), (0.07, 0.03), (0.05, 0.06), (0.05, 0.08), (0.01, 0.04), (0.09, 0.04)),
    )
    assert calc.calculate(corner)[0] < frontal


def test_score_is_clamped():
    heavy = FocusCalculatorConfig(
        face_confidence_weight=2.0,
        yaw_weight=2.0,
        pitch_weight=2.0,
        roll_weight=2.0,
        face_size_weight=2.0,
    )
    score, _ = FocusCalculator(heavy).calculate(_frontal())
    assert score == 1.0


def test_calculation_is_deterministic():
    calc = FocusCalculator.with_defaults()
    assert calc.calculate(_frontal()) == calc.calculate(_frontal())
