"""
FocusMochi — Configuration
==========================
Dataclass configuration for every pipeline stage, with YAML load/save.

Sections in the YAML file map 1:1 onto the dataclasses below:

    camera:   CameraConfig
    detector: DetectorConfig
    focus:    FocusCalculatorConfig
    pet:      PetStateConfig
    vision:   detect_every_frame / preview_stride

Any key that is missing keeps its default; unknown keys are ignored with
a warning so older config files keep loading.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional, Type, TypeVar

import yaml

_log = logging.getLogger("MochiConfig")

T = TypeVar("T")


class ConfigError(Exception):
    """Raised when a config file cannot be read or has the wrong shape."""


# ═══════════════════════════════════════════════════════════════
# Stage configs
# ═══════════════════════════════════════════════════════════════

@dataclass
class CameraConfig:
    device_index: int = 0
    target_fps: int = 10        # low rate keeps CPU usage down
    width: int = 320
    height: int = 240


@dataclass
class DetectorConfig:
    model_path: str = "resources/models/blazeface.onnx"
    anchors_path: Optional[str] = "resources/models/anchors.npy"
    use_mock: bool = False
    confidence_threshold: float = 0.5
    nms_threshold: float = 0.3


@dataclass
class FocusCalculatorConfig:
    """Weights and limits for the attentiveness score.

    The five weights are independent; the defaults sum to 1.0.
    """
    face_confidence_weight: float = 0.3
    yaw_weight: float = 0.25
    pitch_weight: float = 0.2
    roll_weight: float = 0.1
    face_size_weight: float = 0.15
    max_yaw: float = 30.0           # degrees; beyond this counts as fully turned away
    max_pitch: float = 25.0
    max_roll: float = 20.0
    min_face_confidence: float = 0.5
    ideal_face_size: float = 0.15   # face area / frame area


@dataclass
class PetStateConfig:
    focus_enter_threshold: float = 0.75
    focus_exit_threshold: float = 0.35
    focus_confirm_duration: float = 3.0   # seconds; kept for config compatibility
    excited_focus_minutes: float = 25.0
    away_timeout: float = 5.0             # seconds
    interact_duration: float = 3.0        # seconds
    ema_alpha: float = 0.15


@dataclass
class VisionProcessorConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    focus: FocusCalculatorConfig = field(default_factory=FocusCalculatorConfig)
    # False = detect on every other frame to halve CPU
    detect_every_frame: bool = False
    preview_stride: int = 3


@dataclass
class AppConfig:
    vision: VisionProcessorConfig = field(default_factory=VisionProcessorConfig)
    pet: PetStateConfig = field(default_factory=PetStateConfig)


# ═══════════════════════════════════════════════════════════════
# YAML I/O
# ═══════════════════════════════════════════════════════════════

def _build(cls: Type[T], section: Any, name: str) -> T:
    """Instantiate a flat dataclass from a mapping, ignoring unknown keys."""
    if section is None:
        return cls()
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(section).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        _log.warning("Ignoring unknown keys in '%s': %s", name, sorted(unknown))
    try:
        return cls(**{k: v for k, v in section.items() if k in known})
    except TypeError as e:
        raise ConfigError(f"Invalid section '{name}': {e}") from e


def config_from_dict(raw: Optional[dict]) -> AppConfig:
    """Build an AppConfig from the parsed YAML document."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    vision_raw = raw.get("vision") or {}
    if not isinstance(vision_raw, dict):
        raise ConfigError("Section 'vision' must be a mapping")

    vision = VisionProcessorConfig(
        camera=_build(CameraConfig, raw.get("camera"), "camera"),
        detector=_build(DetectorConfig, raw.get("detector"), "detector"),
        focus=_build(FocusCalculatorConfig, raw.get("focus"), "focus"),
        detect_every_frame=bool(vision_raw.get("detect_every_frame", False)),
        preview_stride=int(vision_raw.get("preview_stride", 3)),
    )
    return AppConfig(vision=vision, pet=_build(PetStateConfig, raw.get("pet"), "pet"))


def config_to_dict(config: AppConfig) -> dict:
    return {
        "camera": asdict(config.vision.camera),
        "detector": asdict(config.vision.detector),
        "focus": asdict(config.vision.focus),
        "pet": asdict(config.pet),
        "vision": {
            "detect_every_frame": config.vision.detect_every_frame,
            "preview_stride": config.vision.preview_stride,
        },
    }


def load_config(path: str) -> AppConfig:
    """Load an AppConfig from a YAML file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e
    return config_from_dict(raw)


def save_config(config: AppConfig, path: str) -> None:
    """Write an AppConfig to a YAML file."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config_to_dict(config), f, sort_keys=False)


def load_or_default(path: str) -> AppConfig:
    """Load config, falling back to (and trying to write) the defaults."""
    try:
        return load_config(path)
    except ConfigError as e:
        _log.warning("Using default config: %s", e)
        config = AppConfig()
        if not os.path.exists(path):
            try:
                save_config(config, path)
            except OSError as write_err:
                _log.warning("Could not write default config to %s: %s", path, write_err)
        return config
