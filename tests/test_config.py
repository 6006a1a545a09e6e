"""
FocusMochi — Configuration Tests
================================
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mochi_config import (
    AppConfig,
    ConfigError,
    config_from_dict,
    load_config,
    load_or_default,
    save_config,
)


# ─── Config ───────────────────────────────────────────────────

def test_defaults():
    config = AppConfig()
    assert config.vision.camera.target_fps == 10
    assert (config.vision.camera.width, config.vision.camera.height) == (320, 240)
    assert config.vision.detect_every_frame is False
    assert "blazeface" in config.vision.detector.model_path
    assert config.pet.focus_enter_threshold == 0.75
    assert config.pet.focus_exit_threshold == 0.35
    weights = config.vision.focus
    total = (weights.face_confidence_weight + weights.yaw_weight + weights.pitch_weight
             + weights.roll_weight + weights.face_size_weight)
    assert total == pytest.approx(1.0)


def test_save_and_load(tmp_path):
    config = AppConfig()
    config.vision.camera.device_index = 2
    config.vision.detector.use_mock = True
    config.vision.detect_every_frame = True
    config.pet.away_timeout = 8.0

    path = tmp_path / "mochi.yaml"
    save_config(config, str(path))
    assert load_config(str(path)) == config


def test_partial_file_keeps_defaults(tmp_path):
    path = tmp_path / "mochi.yaml"
    path.write_text("pet:\n  ema_alpha: 0.3\n", encoding="utf-8")
    config = load_config(str(path))
    assert config.pet.ema_alpha == 0.3
    assert config.pet.away_timeout == 5.0
    assert config.vision.camera.device_index == 0


def test_unknown_keys_warn(caplog):
    with caplog.at_level(logging.WARNING, logger="MochiConfig"):
        config = config_from_dict({"camera": {"device_index": 1, "zoom": 2}})
    assert config.vision.camera.device_index == 1
    assert "zoom" in caplog.text


def test_wrong_section_type_raises():
    with pytest.raises(ConfigError):
        config_from_dict({"pet": [1, 2, 3]})


def test_malformed_yaml_raises(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("camera: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yaml"))


def test_load_or_default_writes_defaults(tmp_path):
    path = tmp_path / "conf" / "mochi.yaml"
    config = load_or_default(str(path))
    assert config == AppConfig()
    assert path.exists()
    assert load_config(str(path)) == AppConfig()
