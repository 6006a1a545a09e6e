"""
FocusMochi — Logging Tests
==========================
Console logger setup and the JSONL audit log.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import mochi_logger
from mochi_logger import MochiLogger, get_logger, setup_logger
from mochi_types import PetMood


def _entries(logger: MochiLogger):
    with open(logger.log_path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


# ─── Console logger ───────────────────────────────────────────

def test_setup_logger_does_not_duplicate_handlers():
    logger = setup_logger("MochiTestConsole", logging.DEBUG)
    again = setup_logger("MochiTestConsole", logging.WARNING)
    assert again is logger
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING


# ─── Audit logger ─────────────────────────────────────────────

def test_audit_log_is_jsonl(tmp_path):
    logger = MochiLogger(str(tmp_path))
    logger.mood_changed(PetMood.SAD, PetMood.HAPPY, np.float32(0.8))
    logger.log({"scores": np.array([0.1, 0.2]), "count": np.int64(3)}, event="sample")
    logger.close()

    entries = _entries(logger)
    assert [e["event"] for e in entries] == [
        "system_startup", "mood_changed", "sample", "system_shutdown",
    ]
    mood = entries[1]["data"]
    assert mood["from"] == "sad" and mood["to"] == "happy"
    assert mood["focus_score"] == pytest.approx(0.8)
    assert entries[2]["data"] == {"scores": [0.1, 0.2], "count": 3}


def test_warn_and_error_entries(tmp_path):
    logger = MochiLogger(str(tmp_path))
    logger.warn("camera lost", {"frames": 12})
    logger.error("start failed", ValueError("no model"))
    logger.close()

    warn, error = _entries(logger)[1:3]
    assert warn["level"] == "WARN"
    assert warn["data"] == {"message": "camera lost", "context": {"frames": 12}}
    assert error["level"] == "ERROR"
    assert error["data"]["exception"] == "no model"


def test_log_after_close_is_ignored(tmp_path):
    logger = MochiLogger(str(tmp_path))
    logger.close()
    logger.warn("late warning")
    assert _entries(logger)[-1]["event"] == "system_shutdown"


def test_get_logger_is_shared(tmp_path, monkeypatch):
    monkeypatch.setattr(mochi_logger, "_logger", None)
    first = get_logger(str(tmp_path))
    assert get_logger(str(tmp_path)) is first
    first.close()
    assert get_logger(str(tmp_path)) is not first
    mochi_logger._logger.close()
