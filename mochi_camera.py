"""
FocusMochi — Camera Input Module
================================
Owns ALL camera interaction. No other file should touch
cv2.VideoCapture directly.

Frame sources publish CapturedFrame values on a latest-value channel
from a background daemon thread, paced at 1 / target_fps:

  - CameraCapture      real webcam via OpenCV (BGR -> RGB, resized)
  - MockCameraCapture  synthetic gray frames for development and tests

Features:
  - Frame validation (None, shape, channel count, dtype)
  - Health monitoring (FPS, drop count, connection status)
  - Proper resource cleanup on stop
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

import cv2
import numpy as np

from mochi_config import CameraConfig
from mochi_types import CapturedFrame, now_ms
from mochi_watch import WatchReceiver, watch_channel

# ─── Module Logger ─────────────────────────────────────────────
_log = logging.getLogger("MochiCamera")


class FrameSource(ABC):
    """Capability interface for anything that produces frames.

    Subclasses implement ``_run`` (the capture loop body); thread
    lifecycle and the frame channel live here.
    """

    def __init__(self, config: Optional[CameraConfig] = None):
        self.config = config or CameraConfig()
        self._frame_tx, self._frame_rx = watch_channel(CapturedFrame.empty())
        self._running = threading.Event()
        self._stop_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self) -> WatchReceiver[CapturedFrame]:
        """Receiver for the latest captured frame."""
        return self._frame_tx.subscribe()

    def start(self) -> None:
        """Start the capture thread.

        Raises:
            RuntimeError: if the source is already running.
        """
        if self._running.is_set():
            raise RuntimeError("Camera is already running")

        self._stop_requested.clear()
        self._running.set()
        self._thread = threading.Thread(
            target=self._thread_main, name=type(self).__name__, daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Request the capture loop to exit and wait for it."""
        _log.info("Stopping camera capture...")
        self._stop_requested.set()
        self._running.clear()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def is_running(self) -> bool:
        return self._running.is_set()

    # ── Subclass hooks ────────────────────────────────────────

    @abstractmethod
    def _run(self, frame_interval: float) -> None:
        """Capture loop body; return when stop is requested or on failure."""

    # ── Helpers ───────────────────────────────────────────────

    @property
    def frame_interval(self) -> float:
        return 1.0 / max(int(self.config.target_fps), 1)

    def _should_run(self) -> bool:
        return self._running.is_set() and not self._stop_requested.is_set()

    def _publish(self, frame: CapturedFrame) -> bool:
        if not self._frame_tx.send(frame):
            _log.warning("All frame receivers dropped, stopping capture")
            return False
        return True

    def _sleep(self, seconds: float) -> None:
        self._stop_requested.wait(seconds)

    def _thread_main(self) -> None:
        _log.info("Camera capture starting with config: %s", self.config)
        try:
            self._run(self.frame_interval)
        except Exception as e:
            _log.error("Camera capture error: %s", e)
        finally:
            self._running.clear()
            _log.info("Camera capture thread exited")


class CameraCapture(FrameSource):
    """Validated webcam capture.

    Wraps cv2.VideoCapture with a 1-frame buffer to minimize latency and
    per-frame validation. Frames are converted to RGB and resized to the
    configured resolution before publishing.
    """

    # ── Validation constants ──────────────────────────────────
    EXPECTED_CHANNELS: int = 3
    EXPECTED_DTYPE = np.uint8
    FPS_WINDOW: int = 30                # frames used for rolling FPS

    def __init__(
        self,
        config: Optional[CameraConfig] = None,
        backend: int = cv2.CAP_ANY,
    ) -> None:
        super().__init__(config)
        self._backend = backend
        self._cap: Optional[cv2.VideoCapture] = None
        self._resolution: tuple = (0, 0)

        # Health counters
        self._frames_total: int = 0
        self._frames_dropped: int = 0
        self._last_valid_timestamp: float = 0.0
        self._frame_times: deque = deque(maxlen=self.FPS_WINDOW)

    def get_health_status(self) -> dict:
        """Snapshot of capture health metrics."""
        now = time.monotonic()
        last_age_ms = (
            (now - self._last_valid_timestamp) * 1000.0
            if self._last_valid_timestamp > 0
            else float("inf")
        )
        cap = self._cap
        return {
            "connected": bool(cap is not None and cap.isOpened()),
            "fps_actual": self._calculate_fps(),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                (self._frames_dropped / self._frames_total * 100.0)
                if self._frames_total > 0
                else 0.0
            ),
            "last_valid_frame_age_ms": round(last_age_ms, 2),
            "resolution": self._resolution,
        }

    # ── Capture loop ──────────────────────────────────────────

    def _run(self, frame_interval: float) -> None:
        cfg = self.config
        cap = cv2.VideoCapture(cfg.device_index, self._backend)
        if not cap.isOpened():
            _log.error("Failed to open camera %d", cfg.device_index)
            cap.release()
            return

        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._cap = cap
        self._resolution = (
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        _log.info("Camera opened: id=%d resolution=%s", cfg.device_index, self._resolution)

        try:
            while self._should_run():
                frame = self.read_frame()
                if frame is not None:
                    if not self._publish(frame):
                        break
                    if self._frames_total % 100 == 0:
                        _log.debug("Real capture: %d frames captured", self._frames_total)
                self._sleep(frame_interval)
        finally:
            self._release()

    def read_frame(self) -> Optional[CapturedFrame]:
        """Read, validate and convert one frame; None if it was dropped."""
        self._frames_total += 1
        ret, bgr = self._cap.read()
        if not self._validate_frame(ret, bgr):
            self._frames_dropped += 1
            return None

        timestamp = time.monotonic()
        self._last_valid_timestamp = timestamp
        self._frame_times.append(timestamp)

        cfg = self.config
        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        if rgb.shape[1] != cfg.width or rgb.shape[0] != cfg.height:
            rgb = cv2.resize(rgb, (cfg.width, cfg.height), interpolation=cv2.INTER_LINEAR)

        return CapturedFrame(
            width=cfg.width,
            height=cfg.height,
            data=np.ascontiguousarray(rgb).reshape(-1),
            timestamp_ms=now_ms(),
        )

    def _release(self) -> None:
        health = self.get_health_status()
        _log.info(
            "Camera releasing: total=%d dropped=%d (%.1f%%) avg_fps=%.1f",
            health["frames_total"],
            health["frames_dropped"],
            health["drop_rate_pct"],
            health["fps_actual"],
        )
        if self._cap is not None:
            self._cap.release()
        self._cap = None

    # ── Private helpers ───────────────────────────────────────

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        if not ret:
            _log.debug("Validation FAIL: cap.read() returned ret=False")
            return False
        if frame is None:
            _log.debug("Validation FAIL: frame is None")
            return False
        if frame.ndim != 3:
            _log.debug("Validation FAIL: ndim=%d (expected 3)", frame.ndim)
            return False
        if frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug(
                "Validation FAIL: channels=%d (expected %d)",
                frame.shape[2],
                self.EXPECTED_CHANNELS,
            )
            return False
        if frame.dtype != self.EXPECTED_DTYPE:
            _log.debug("Validation FAIL: dtype=%s (expected uint8)", frame.dtype)
            return False
        return True

    def _calculate_fps(self) -> float:
        """Rolling FPS over the last N valid frames."""
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed


class MockCameraCapture(FrameSource):
    """Synthetic frames: uniform gray, brightness 128 + (n mod 50)."""

    def __init__(self, config: Optional[CameraConfig] = None):
        super().__init__(config)
        self.frames_captured = 0

    def make_frame(self, index: int) -> CapturedFrame:
        cfg = self.config
        brightness = (128 + index % 50) % 256
        data = np.full(cfg.width * cfg.height * 3, brightness, dtype=np.uint8)
        return CapturedFrame(
            width=cfg.width, height=cfg.height, data=data, timestamp_ms=now_ms()
        )

    def _run(self, frame_interval: float) -> None:
        _log.info("Running in MOCK mode (no real camera)")
        while self._should_run():
            if not self._publish(self.make_frame(self.frames_captured)):
                break
            self.frames_captured += 1
            if self.frames_captured % 100 == 0:
                _log.debug("Mock capture: %d frames captured", self.frames_captured)
            self._sleep(frame_interval)
