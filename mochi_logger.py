"""
FocusMochi — Logging
====================
Console logging setup plus a structured JSONL audit log.

The audit log records every mood change, gesture, pipeline start/stop
and error as one JSON object per line, so a session can be replayed
for debugging the state machine after the fact.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe writes (camera, pipeline and host threads all log)
  - NumPy scalars/arrays serialized transparently
"""

import json
import logging
import os
import sys
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured console logger for FocusMochi modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class MochiJSONEncoder(json.JSONEncoder):
    """Handles NumPy types and enums for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class MochiLogger:
    """Structured audit log written to ``<log_dir>/mochi_audit.jsonl``."""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, "mochi_audit.jsonl")
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()
        self._console = logging.getLogger("MochiAudit")

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data
        }
        line = json.dumps(entry, cls=MochiJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def mood_changed(self, old_mood, new_mood, focus_score: float):
        self.log({"from": old_mood, "to": new_mood, "focus_score": focus_score},
                 event="mood_changed")

    def warn(self, message: str, context: Optional[Dict] = None):
        """Log structured warning."""
        self._console.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        """Log structured error with exception details."""
        self._console.error(message)
        err_details = str(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        """Clean shutdown."""
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            if not self._file.closed:
                self._file.close()


_logger = None
_logger_lock = threading.Lock()


def get_logger(log_dir: str = "logs") -> MochiLogger:
    """Process-wide audit logger (created on first use)."""
    global _logger
    with _logger_lock:
        if _logger is None or _logger._file.closed:
            _logger = MochiLogger(log_dir)
        return _logger
