"""
FocusMochi — Pet Mood State Machine
===================================
Maps the per-frame focus signal and gesture events onto the pet's mood.

States: IDLE (initial), HAPPY, EXCITED, SAD, SLEEPY, INTERACT
Focus levels: AWAY (initial), DISTRACTED, FOCUSED

Per-tick update, evaluated in order:
  1. face seen        -> remember when
  2. no face for > away_timeout (or never) -> SLEEPY / AWAY
     (this also cuts an active INTERACT short)
  3. in INTERACT      -> hold until interact_duration, then restore
  4. EMA-smooth the raw score
  5. hysteresis: enter FOCUSED above enter_threshold, leave below
     exit_threshold
  6. FOCUSED -> HAPPY, EXCITED after excited_focus_minutes of unbroken
     focus; DISTRACTED -> SAD; AWAY -> SLEEPY

Every public method runs under one lock, so gestures arriving from the
host thread serialize cleanly against ticks from the pipeline thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from mochi_config import PetStateConfig
from mochi_types import FocusLevel, FocusStats, GestureType, PetMood

_log = logging.getLogger("MochiState")

# Fixed per-tick focus credit (~15 fps capture cadence)
FOCUS_TICK_MS = 66


class PetStateMachine:
    """Mood state machine driven by (score, face_present) ticks and gestures."""

    def __init__(
        self,
        config: Optional[PetStateConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize state machine.

        Args:
            config: Thresholds and timers.
            clock: Monotonic time source in seconds (injectable for tests).
        """
        self.config = config or PetStateConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self.mood: PetMood = PetMood.IDLE
        self.focus_level: FocusLevel = FocusLevel.AWAY
        self.total_focus_ms: int = 0

        self._mood_entered_at: float = clock()
        self._focus_started_at: Optional[float] = None
        self._last_face_detected_at: Optional[float] = None
        self._smoothed_focus_score: float = 0.0
        self._mood_before_interact: Optional[PetMood] = None

    # ── Public API ────────────────────────────────────────────

    @property
    def smoothed_focus_score(self) -> float:
        return self._smoothed_focus_score

    @property
    def mood_before_interact(self) -> Optional[PetMood]:
        return self._mood_before_interact

    def update(self, raw_focus_score: float, face_detected: bool) -> Optional[PetMood]:
        """Advance one tick.

        Args:
            raw_focus_score: Unsmoothed score in [0, 1].
            face_detected: Whether a face was present this tick.

        Returns:
            The new mood if it changed during this tick, else None.
        """
        with self._lock:
            old_mood = self.mood
            self._tick(raw_focus_score, face_detected)
            return self.mood if self.mood != old_mood else None

    def on_gesture(self, gesture: GestureType) -> PetMood:
        """Enter INTERACT immediately, remembering the mood to return to."""
        with self._lock:
            if self.mood != PetMood.INTERACT:
                self._mood_before_interact = self.mood

            self.mood = PetMood.INTERACT
            self._mood_entered_at = self._clock()

            _log.info("Gesture detected: %s, entering Interact mode", gesture.value)
            return self.mood

    def get_focus_stats(self) -> FocusStats:
        with self._lock:
            return FocusStats(
                total_focus_ms=self.total_focus_ms,
                current_mood=self.mood,
                focus_level=self.focus_level,
                focus_score=self._smoothed_focus_score,
            )

    def reset_daily_stats(self) -> None:
        """Zero the cumulative focus counter; mood and timers are untouched."""
        with self._lock:
            self.total_focus_ms = 0

    # ── Private helpers (caller holds the lock) ───────────────

    def _tick(self, raw_focus_score: float, face_detected: bool) -> None:
        now = self._clock()
        cfg = self.config

        if face_detected:
            self._last_face_detected_at = now

        # Absence pre-empts everything, INTERACT included
        last_face = self._last_face_detected_at
        if last_face is None or now - last_face > cfg.away_timeout:
            self._mood_before_interact = None
            self._transition_to(PetMood.SLEEPY, now)
            self.focus_level = FocusLevel.AWAY
            self._focus_started_at = None
            return

        if self.mood == PetMood.INTERACT:
            if now - self._mood_entered_at > cfg.interact_duration:
                prev_mood = self._mood_before_interact
                self._mood_before_interact = None
                if prev_mood is not None:
                    self.mood = prev_mood
                    self._mood_entered_at = now
            return

        self._smoothed_focus_score = (
            cfg.ema_alpha * raw_focus_score
            + (1.0 - cfg.ema_alpha) * self._smoothed_focus_score
        )

        new_level = self._determine_focus_level()

        if new_level == FocusLevel.FOCUSED:
            if self.focus_level != FocusLevel.FOCUSED:
                self._focus_started_at = now
                self.focus_level = FocusLevel.FOCUSED

            focus_duration = now - self._focus_started_at
            if focus_duration >= cfg.excited_focus_minutes * 60.0:
                self._transition_to(PetMood.EXCITED, now)
            else:
                self._transition_to(PetMood.HAPPY, now)

            self.total_focus_ms += FOCUS_TICK_MS
        elif new_level == FocusLevel.DISTRACTED:
            self.focus_level = FocusLevel.DISTRACTED
            self._focus_started_at = None
            self._transition_to(PetMood.SAD, now)
        else:
            self.focus_level = FocusLevel.AWAY
            self._focus_started_at = None
            self._transition_to(PetMood.SLEEPY, now)

    def _determine_focus_level(self) -> FocusLevel:
        """Hysteresis band: different thresholds for entering and leaving FOCUSED."""
        score = self._smoothed_focus_score
        if self.focus_level == FocusLevel.FOCUSED:
            if score < self.config.focus_exit_threshold:
                return FocusLevel.DISTRACTED
            return FocusLevel.FOCUSED
        if score > self.config.focus_enter_threshold:
            return FocusLevel.FOCUSED
        return FocusLevel.DISTRACTED

    def _transition_to(self, new_mood: PetMood, now: float) -> None:
        if self.mood != new_mood:
            _log.debug("Pet mood: %s -> %s", self.mood.value, new_mood.value)
            self.mood = new_mood
            self._mood_entered_at = now
