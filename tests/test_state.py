"""
FocusMochi — Pet State Machine Tests
====================================
Drives PetStateMachine with an injected fake clock so timers (away
timeout, interact duration, excited threshold) run instantly.
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mochi_config import PetStateConfig
from mochi_state import FOCUS_TICK_MS, PetStateMachine
from mochi_types import FocusLevel, GestureType, PetMood

TICK = 0.066


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machine(clock):
    return PetStateMachine(PetStateConfig(), clock=clock)


def _run(machine, clock, score, face, ticks):
    """Feed identical ticks; return the list of reported mood changes."""
    changes = []
    for _ in range(ticks):
        clock.advance(TICK)
        mood = machine.update(score, face)
        if mood is not None:
            changes.append(mood)
    return changes


def _focus(machine, clock):
    _run(machine, clock, 0.9, True, 30)
    assert machine.focus_level == FocusLevel.FOCUSED


# ─── Initial state ────────────────────────────────────────────

def test_initial_state(machine):
    assert machine.mood == PetMood.IDLE
    assert machine.focus_level == FocusLevel.AWAY
    assert machine.total_focus_ms == 0
    assert machine.smoothed_focus_score == 0.0


def test_never_seen_face_is_sleepy(machine, clock):
    clock.advance(TICK)
    assert machine.update(0.9, False) == PetMood.SLEEPY
    assert machine.focus_level == FocusLevel.AWAY
    # no further change reported
    assert machine.update(0.9, False) is None


# ─── Focus / hysteresis ───────────────────────────────────────

def test_sustained_focus_makes_pet_happy(machine, clock):
    changes = _run(machine, clock, 0.9, True, 100)
    assert machine.focus_level == FocusLevel.FOCUSED
    assert machine.mood in (PetMood.HAPPY, PetMood.EXCITED)
    # low smoothed score first (SAD), then HAPPY once above 0.75
    assert changes == [PetMood.SAD, PetMood.HAPPY]


def test_ema_smoothing(machine, clock):
    _run(machine, clock, 1.0, True, 1)
    assert machine.smoothed_focus_score == pytest.approx(0.15)
    _run(machine, clock, 1.0, True, 1)
    assert machine.smoothed_focus_score == pytest.approx(0.15 + 0.85 * 0.15)


def test_focus_ms_counts_fixed_tick(machine, clock):
    _focus(machine, clock)
    before = machine.total_focus_ms
    _run(machine, clock, 0.9, True, 10)
    assert machine.total_focus_ms == before + 10 * FOCUS_TICK_MS


def test_hysteresis_holds_focus_in_band(machine, clock):
    _focus(machine, clock)
    # 0.5 is below the enter threshold but above the exit threshold
    _run(machine, clock, 0.5, True, 100)
    assert machine.focus_level == FocusLevel.FOCUSED
    assert machine.mood == PetMood.HAPPY


def test_drop_below_exit_threshold_makes_pet_sad(machine, clock):
    _focus(machine, clock)
    changes = _run(machine, clock, 0.0, True, 50)
    assert machine.focus_level == FocusLevel.DISTRACTED
    assert machine.mood == PetMood.SAD
    assert changes == [PetMood.SAD]


def test_no_focus_credit_while_distracted(machine, clock):
    _run(machine, clock, 0.2, True, 50)
    assert machine.focus_level == FocusLevel.DISTRACTED
    assert machine.total_focus_ms == 0


def test_long_focus_makes_pet_excited(machine, clock):
    _focus(machine, clock)
    clock.advance(25 * 60)
    assert machine.update(0.9, True) == PetMood.EXCITED


def test_focus_timer_restarts_after_distraction(machine, clock):
    _focus(machine, clock)
    clock.advance(24 * 60)
    _run(machine, clock, 0.0, True, 50)
    _focus(machine, clock)
    clock.advance(2 * 60)
    machine.update(0.9, True)
    assert machine.mood == PetMood.HAPPY


# ─── Absence ──────────────────────────────────────────────────

def test_absence_past_timeout_is_sleepy(machine, clock):
    _focus(machine, clock)
    clock.advance(5.5)
    assert machine.update(0.0, False) == PetMood.SLEEPY
    assert machine.focus_level == FocusLevel.AWAY


def test_short_absence_is_not_sleepy(machine, clock):
    _focus(machine, clock)
    clock.advance(2.0)
    machine.update(0.0, False)
    assert machine.mood != PetMood.SLEEPY
    assert machine.focus_level != FocusLevel.AWAY


# ─── Gestures ─────────────────────────────────────────────────

def test_gesture_enters_interact_then_restores(machine, clock):
    _focus(machine, clock)
    assert machine.on_gesture(GestureType.WAVE) == PetMood.INTERACT
    assert machine.mood == PetMood.INTERACT
    assert machine.mood_before_interact == PetMood.HAPPY

    # held while inside the interact window
    clock.advance(1.0)
    assert machine.update(0.9, True) is None
    assert machine.mood == PetMood.INTERACT

    clock.advance(2.5)
    assert machine.update(0.9, True) == PetMood.HAPPY
    assert machine.mood_before_interact is None


def test_interact_freezes_smoothing(machine, clock):
    _focus(machine, clock)
    score = machine.smoothed_focus_score
    machine.on_gesture(GestureType.HEART)
    _run(machine, clock, 0.0, True, 10)
    assert machine.smoothed_focus_score == score


def test_repeated_gesture_keeps_original_mood(machine, clock):
    _focus(machine, clock)
    machine.on_gesture(GestureType.WAVE)
    machine.on_gesture(GestureType.OK)
    assert machine.mood_before_interact == PetMood.HAPPY


def test_absence_overrides_interact(machine, clock):
    _focus(machine, clock)
    machine.on_gesture(GestureType.THUMBS_UP)
    clock.advance(6.0)
    assert machine.update(0.0, False) == PetMood.SLEEPY
    assert machine.focus_level == FocusLevel.AWAY
    assert machine.mood_before_interact is None

    # coming back does not resurrect the interrupted mood
    _run(machine, clock, 0.9, True, 5)
    assert machine.mood != PetMood.INTERACT
    assert machine.mood_before_interact is None


# ─── Stats ────────────────────────────────────────────────────

def test_focus_stats_snapshot(machine, clock):
    _focus(machine, clock)
    stats = machine.get_focus_stats()
    assert stats.current_mood == PetMood.HAPPY
    assert stats.focus_level == FocusLevel.FOCUSED
    assert stats.total_focus_ms == machine.total_focus_ms
    assert stats.focus_score == pytest.approx(machine.smoothed_focus_score)
    assert stats.to_dict()["current_mood"] == "happy"


def test_reset_daily_stats_keeps_mood(machine, clock):
    _focus(machine, clock)
    machine.reset_daily_stats()
    assert machine.total_focus_ms == 0
    assert machine.mood == PetMood.HAPPY


def test_concurrent_gestures_and_ticks(machine, clock):
    errors = []

    def gestures():
        try:
            for _ in range(200):
                machine.on_gesture(GestureType.WAVE)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    t = threading.Thread(target=gestures)
    t.start()
    for _ in range(200):
        machine.update(0.9, True)
    t.join()

    assert not errors
    assert machine.mood in set(PetMood)
