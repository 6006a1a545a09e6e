"""
FocusMochi — Engine
===================
Host-facing facade: wires the vision pipeline into the pet state
machine and exposes the commands a UI shell calls.

Threads:
  camera thread     -> frames      (FrameSource)
  vision thread     -> FocusState  (VisionProcessor)
  consumer thread   -> PetMood     (this module)

Gesture commands arrive from the host thread; the state machine's lock
serializes them against consumer ticks.
"""

from __future__ import annotations

import datetime
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Tuple

import psutil

from mochi_config import AppConfig, VisionProcessorConfig
from mochi_logger import MochiLogger, get_logger
from mochi_processor import PipelineError, VisionProcessor
from mochi_state import FOCUS_TICK_MS, PetStateMachine
from mochi_types import FocusLevel, FocusState, FocusStats, GestureType, PetMood
from mochi_watch import ChannelClosed, WatchReceiver, watch_channel

_log = logging.getLogger("MochiEngine")

_POLL_INTERVAL = 0.1


class StatsSink(ABC):
    """Accumulator for per-day focus totals (persistence lives elsewhere)."""

    @abstractmethod
    def update_today_stats(self, focus_ms: int, distracted_ms: int) -> None:
        """Add the given deltas to today's totals."""


class MemoryStatsSink(StatsSink):
    """In-process StatsSink keyed by ISO date."""

    def __init__(self, today: Callable[[], datetime.date] = datetime.date.today):
        self._today = today
        self._lock = threading.Lock()
        self.days: Dict[str, Dict[str, int]] = {}

    def update_today_stats(self, focus_ms: int, distracted_ms: int) -> None:
        key = self._today().isoformat()
        with self._lock:
            day = self.days.setdefault(key, {"total_focus_ms": 0, "total_distracted_ms": 0})
            day["total_focus_ms"] += int(focus_ms)
            day["total_distracted_ms"] += int(distracted_ms)

    def get_today_stats(self) -> Optional[Dict[str, int]]:
        with self._lock:
            day = self.days.get(self._today().isoformat())
            return dict(day) if day is not None else None


@dataclass
class PetStateResponse:
    """Snapshot returned to the host by get_pet_state()."""
    mood: PetMood
    focus_score: float
    total_focus_minutes: float
    is_vision_active: bool
    face_detected: bool

    def to_dict(self) -> dict:
        d = asdict(self)
        d["mood"] = self.mood.value
        return d


ProcessorFactory = Callable[[VisionProcessorConfig], VisionProcessor]


class MochiEngine:
    """Pet state machine plus an optional running vision pipeline."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        stats_sink: Optional[StatsSink] = None,
        on_mood_changed: Optional[Callable[[PetMood], None]] = None,
        audit_logger: Optional[MochiLogger] = None,
        processor_factory: ProcessorFactory = VisionProcessor,
    ) -> None:
        self.config = config or AppConfig()
        self.machine = PetStateMachine(self.config.pet)
        self.stats_sink = stats_sink
        self.on_mood_changed = on_mood_changed
        self.audit = audit_logger or get_logger()
        self._processor_factory = processor_factory

        self._mood_tx, self._mood_rx = watch_channel(self.machine.mood)

        self._lock = threading.Lock()
        self._running = threading.Event()
        self._processor: Optional[VisionProcessor] = None
        self._consumer: Optional[threading.Thread] = None
        self._latest_focus_state: Optional[FocusState] = None

        # Deltas flushed to the stats sink on stop
        self._focus_ms_at_start = 0
        self._distracted_ms = 0

    # ── Vision lifecycle ──────────────────────────────────────

    def is_vision_running(self) -> bool:
        return self._running.is_set()

    def start_vision(self) -> None:
        """Start the vision pipeline and the mood consumer thread.

        Raises:
            PipelineError: already running, or the pipeline failed to start.
            FaceDetectorError: the detector could not be built.
        """
        with self._lock:
            if self._running.is_set():
                raise PipelineError("Vision is already running")

            _log.info("Starting vision detection...")
            processor = self._processor_factory(self.config.vision)
            focus_rx = processor.subscribe()
            try:
                processor.start()
            except Exception as e:
                self.audit.error("Vision start failed", e)
                raise

            self._processor = processor
            self._latest_focus_state = None
            self._focus_ms_at_start = self.machine.total_focus_ms
            self._distracted_ms = 0
            self._running.set()

            self._consumer = threading.Thread(
                target=self._consume, args=(processor, focus_rx),
                name="MochiEngine", daemon=True,
            )
            self._consumer.start()

        self.audit.log({"detector_mock": self.config.vision.detector.use_mock},
                       event="vision_started")
        _log.info("Vision detection started successfully")

    def stop_vision(self, timeout: float = 2.0) -> None:
        """Stop the pipeline and flush focus/distracted deltas to the sink.

        Raises:
            PipelineError: if vision is not running.
        """
        with self._lock:
            if not self._running.is_set():
                raise PipelineError("Vision is not running")
            processor, consumer = self._detach_pipeline()

        _log.info("Stopping vision detection...")
        self._finish_vision(processor, consumer, timeout)

    def shutdown(self) -> None:
        if self._running.is_set():
            self.stop_vision()

    # ── Host commands ─────────────────────────────────────────

    def trigger_gesture(self, name: str) -> PetMood:
        """Apply a named gesture; raises ValueError for unknown names."""
        gesture = GestureType.parse(name)
        _log.info("Gesture triggered: %s", gesture.value)

        old_mood = self.machine.mood
        new_mood = self.machine.on_gesture(gesture)
        self._mood_tx.send(new_mood)
        self.audit.log({"gesture": gesture, "from": old_mood, "to": new_mood}, event="gesture")
        if new_mood != old_mood:
            self._notify(new_mood)
        return new_mood

    def get_pet_state(self) -> PetStateResponse:
        stats = self.machine.get_focus_stats()
        running = self._running.is_set()
        latest = self._latest_focus_state

        if running and latest is not None:
            focus_score, face_detected = latest.focus_score, latest.face_present
        else:
            focus_score, face_detected = stats.focus_score, False

        return PetStateResponse(
            mood=stats.current_mood,
            focus_score=focus_score,
            total_focus_minutes=stats.total_focus_ms / 60000.0,
            is_vision_active=running,
            face_detected=face_detected,
        )

    def get_focus_stats(self) -> FocusStats:
        return self.machine.get_focus_stats()

    def reset_stats(self) -> None:
        """Zero today's focus counter (mood is untouched)."""
        self.machine.reset_daily_stats()
        self._focus_ms_at_start = 0
        self._distracted_ms = 0
        self.audit.log({}, event="stats_reset")
        _log.info("Focus stats reset")

    def get_vision_status(self) -> dict:
        running = self._running.is_set()
        processor = self._processor
        latest = self._latest_focus_state if running else None
        return {
            "is_running": running,
            "focus_state": latest.to_dict() if latest is not None else None,
            "frames_processed": processor.frames_processed if processor is not None else 0,
            "memory_mb": round(psutil.Process().memory_info().rss / (1024 * 1024), 1),
        }

    def subscribe_moods(self) -> WatchReceiver[PetMood]:
        """Receiver for mood changes (both tick-driven and gestures)."""
        return self._mood_tx.subscribe()

    # ── Consumer ──────────────────────────────────────────────

    def process_focus_state(self, focus_state: FocusState) -> Optional[PetMood]:
        """Feed one FocusState into the state machine.

        Returns:
            The new mood if it changed, else None.
        """
        self._latest_focus_state = focus_state
        old_mood = self.machine.mood
        new_mood = self.machine.update(focus_state.focus_score, focus_state.face_present)

        if self.machine.focus_level == FocusLevel.DISTRACTED:
            self._distracted_ms += FOCUS_TICK_MS

        if new_mood is not None:
            self._mood_tx.send(new_mood)
            self.audit.mood_changed(old_mood, new_mood, self.machine.smoothed_focus_score)
            self._notify(new_mood)
        return new_mood

    def _consume(self, processor: VisionProcessor, focus_rx: WatchReceiver[FocusState]) -> None:
        while self._running.is_set():
            try:
                if not focus_rx.changed(timeout=_POLL_INTERVAL):
                    if not processor.is_running():
                        self._on_pipeline_ended(processor)
                        break
                    continue
            except ChannelClosed:
                break
            self.process_focus_state(focus_rx.borrow())
        _log.info("Vision state update task ended")

    def _on_pipeline_ended(self, processor: VisionProcessor) -> None:
        """The processor stopped on its own (camera lost, loop error)."""
        with self._lock:
            if self._processor is not processor:
                # stop_vision() already took it
                return
            self._detach_pipeline()

        _log.warning("Vision pipeline ended unexpectedly")
        self.audit.warn("Vision pipeline ended unexpectedly",
                        {"frames_processed": processor.frames_processed})
        self._finish_vision(processor, None, 0.0)

    def _detach_pipeline(self) -> Tuple[Optional[VisionProcessor], Optional[threading.Thread]]:
        # caller holds self._lock
        processor, consumer = self._processor, self._consumer
        self._processor = None
        self._consumer = None
        self._running.clear()
        return processor, consumer

    def _finish_vision(
        self,
        processor: Optional[VisionProcessor],
        consumer: Optional[threading.Thread],
        timeout: float,
    ) -> None:
        """Release the pipeline, join the consumer and flush stats deltas."""
        if processor is not None:
            processor.release()
        if consumer is not None and consumer is not threading.current_thread():
            consumer.join(timeout=timeout)

        focus_delta, distracted_delta = self._take_deltas()
        if self.stats_sink is not None:
            self.stats_sink.update_today_stats(focus_delta, distracted_delta)

        self.audit.log({"focus_ms": focus_delta, "distracted_ms": distracted_delta},
                       event="vision_stopped")
        _log.info("Vision detection stopped")

    def _notify(self, mood: PetMood) -> None:
        if self.on_mood_changed is None:
            return
        try:
            self.on_mood_changed(mood)
        except Exception as e:
            self.audit.error("on_mood_changed callback failed", e)

    def _take_deltas(self) -> Tuple[int, int]:
        focus_delta = max(self.machine.total_focus_ms - self._focus_ms_at_start, 0)
        distracted_delta = self._distracted_ms
        self._focus_ms_at_start = self.machine.total_focus_ms
        self._distracted_ms = 0
        return focus_delta, distracted_delta
