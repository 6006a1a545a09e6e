"""
FocusMochi — Vision Processor
=============================
The perception pipeline thread:

  FrameSource -> BlazeFaceDetector -> FocusCalculator -> FocusState

Frames arrive on a latest-value channel, so a slow detector never
accumulates a backlog; it always works on the newest frame. Detection
runs on every other frame unless ``detect_every_frame`` is set, and the
previous FocusState is re-published (with a fresh timestamp) on the
frames in between so consumers see a steady heartbeat.

Errors:
  - building the detector fails  -> start() raises, nothing is running
  - detection fails on one frame -> logged, previous state retained
  - frame channel closed         -> loop exits cleanly
  - frame source thread died     -> loop exits, is_running() goes False
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Optional

from mochi_camera import CameraCapture, FrameSource, MockCameraCapture
from mochi_config import VisionProcessorConfig
from mochi_detector import BlazeFaceDetector, FaceDetectorError, create_detector
from mochi_focus import FocusCalculator
from mochi_types import CapturedFrame, FocusState, now_ms
from mochi_watch import ChannelClosed, WatchReceiver, watch_channel

_log = logging.getLogger("MochiVision")

# Wait slice for new frames; bounds how long stop() can go unnoticed
_POLL_INTERVAL = 0.1


class PipelineError(Exception):
    """Raised when the processing pipeline cannot be started."""


class VisionProcessor:
    """Owns the frame source, detector and scorer, and publishes FocusState."""

    def __init__(
        self,
        config: Optional[VisionProcessorConfig] = None,
        frame_source: Optional[FrameSource] = None,
        detector: Optional[BlazeFaceDetector] = None,
    ) -> None:
        """
        Args:
            config: Pipeline configuration.
            frame_source: Injected source; defaults to CameraCapture, or
                MockCameraCapture when the detector runs in mock mode.
            detector: Injected detector; built from config on start() if None.
        """
        self.config = config or VisionProcessorConfig()
        self._source = frame_source
        self._detector = detector
        self._calculator = FocusCalculator(self.config.focus)

        self._state_tx, self._state_rx = watch_channel(FocusState())
        self._frame_tx, self._frame_rx = watch_channel(CapturedFrame.empty())

        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._frames_processed = 0

    # ── Public API ────────────────────────────────────────────

    def subscribe(self) -> WatchReceiver[FocusState]:
        """Receiver for the latest FocusState."""
        return self._state_tx.subscribe()

    def subscribe_frames(self) -> WatchReceiver[CapturedFrame]:
        """Receiver for preview frames (every ``preview_stride``-th frame)."""
        return self._frame_tx.subscribe()

    def is_running(self) -> bool:
        return self._running.is_set()

    def latest_state(self) -> FocusState:
        return self._state_rx.peek()

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    @property
    def frame_source(self) -> Optional[FrameSource]:
        return self._source

    def start(self) -> None:
        """Build the detector, start the frame source and the loop thread.

        Raises:
            PipelineError: already running, or the frame source failed to start.
            FaceDetectorError: the detector could not be built.
        """
        if self._running.is_set():
            raise PipelineError("Vision processor is already running")

        if self._detector is None:
            self._detector = create_detector(self.config.detector)

        if self._source is None:
            if self.config.detector.use_mock:
                self._source = MockCameraCapture(self.config.camera)
            else:
                self._source = CameraCapture(self.config.camera)

        frame_rx = self._source.subscribe()
        try:
            self._source.start()
        except RuntimeError as e:
            raise PipelineError(f"Failed to start camera: {e}") from e

        self._frames_processed = 0
        self._running.set()
        self._thread = threading.Thread(
            target=self._processing_loop,
            args=(self._source, self._detector, frame_rx),
            name="VisionProcessor",
            daemon=True,
        )
        self._thread.start()
        _log.info("Vision processor starting...")

    def stop(self, timeout: float = 2.0) -> None:
        _log.info("Stopping vision processor...")
        self._running.clear()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        if self._source is not None and self._source.is_running():
            self._source.stop()

    def release(self) -> None:
        """Stop, then free the detector's model resources."""
        self.stop()
        if self._detector is not None:
            self._detector.release()
            self._detector = None

    # ── Processing loop ───────────────────────────────────────

    def _processing_loop(
        self,
        source: FrameSource,
        detector: BlazeFaceDetector,
        frame_rx: WatchReceiver[CapturedFrame],
    ) -> None:
        _log.info("Vision processing loop started")
        last_state = FocusState()
        frame_count = 0
        preview_stride = max(int(self.config.preview_stride), 1)

        try:
            while self._running.is_set():
                try:
                    if not frame_rx.changed(timeout=_POLL_INTERVAL):
                        if not source.is_running():
                            _log.warning("Frame source stopped, ending vision loop")
                            break
                        continue
                except ChannelClosed:
                    _log.warning("Frame channel closed")
                    break

                frame = frame_rx.borrow()
                if frame.is_empty():
                    continue

                frame_count += 1
                self._frames_processed = frame_count

                if frame_count == 1:
                    _log.info("First frame captured: %dx%d", frame.width, frame.height)

                if frame_count % preview_stride == 1 % preview_stride:
                    self._frame_tx.send(frame)

                if self.config.detect_every_frame or frame_count % 2 == 0:
                    try:
                        state = self._analyze(detector, frame)
                    except FaceDetectorError as e:
                        _log.warning("Face detection error: %s", e)
                        continue

                    if not self._state_tx.send(state):
                        _log.warning("All state receivers dropped")
                        break
                    last_state = state

                    if frame_count % 50 == 0:
                        _log.debug(
                            "Frame %d: face=%s, score=%.2f",
                            frame_count, state.face_present, state.focus_score,
                        )
                else:
                    state = dataclasses.replace(last_state, timestamp_ms=now_ms())
                    if not self._state_tx.send(state):
                        break
        except Exception as e:
            _log.error("Vision processing error: %s", e)
        finally:
            source.stop()
            self._running.clear()
            _log.info("Vision processor stopped")

    def _analyze(self, detector: BlazeFaceDetector, frame: CapturedFrame) -> FocusState:
        detections = detector.detect(frame.data, frame.width, frame.height)
        primary_face = detections[0] if detections else None
        focus_score, face_detected = self._calculator.calculate(primary_face)
        return FocusState.from_detection(primary_face if face_detected else None, focus_score)
