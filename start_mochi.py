"""
FocusMochi — Launcher
=====================
Runs the perception-to-mood pipeline headless and prints every mood
change to the console.

Usage:
  python start_mochi.py --mock                 (no camera, no model)
  python start_mochi.py --camera 1 --every-frame
  python start_mochi.py --config mochi.yaml --duration 60
"""

import argparse
import logging
import os
import sys
import time

# Add root
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mochi_config import ConfigError, load_config, load_or_default
from mochi_detector import FaceDetectorError
from mochi_engine import MemoryStatsSink, MochiEngine
from mochi_logger import get_logger, setup_logger
from mochi_processor import PipelineError

DEFAULT_CONFIG_PATH = "mochi.yaml"
STATUS_INTERVAL = 5.0   # seconds between status lines


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FocusMochi Launcher")
    parser.add_argument("--config", type=str, default=None,
                        help=f"YAML config file (default: {DEFAULT_CONFIG_PATH}, created if missing)")
    parser.add_argument("--mock", action="store_true", help="Use the mock camera and mock detector")
    parser.add_argument("--model", type=str, default=None, help="Path to BlazeFace ONNX model")
    parser.add_argument("--anchors", type=str, default=None, help="Path to anchors .npy")
    parser.add_argument("--camera", type=int, default=None, help="Camera device index")
    parser.add_argument("--every-frame", action="store_true", help="Run detection on every frame")
    parser.add_argument("--duration", type=float, default=0.0,
                        help="Stop after N seconds (0 = until Ctrl+C)")
    parser.add_argument("--log-dir", type=str, default="logs", help="Audit log directory")
    parser.add_argument("--verbose", action="store_true", help="Debug-level console logging")
    return parser


def apply_overrides(config, args):
    """Command-line flags win over the config file."""
    vision = config.vision
    if args.mock:
        vision.detector.use_mock = True
    if args.model:
        vision.detector.model_path = args.model
    if args.anchors:
        vision.detector.anchors_path = args.anchors
    if args.camera is not None:
        vision.camera.device_index = args.camera
    if args.every_frame:
        vision.detect_every_frame = True
    return config


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    for name in ("MochiConfig", "MochiDetector", "MochiCamera", "MochiVision",
                 "MochiState", "MochiFocus", "MochiEngine", "MochiAudit"):
        setup_logger(name, level)

    try:
        if args.config:
            config = load_config(args.config)
        else:
            config = load_or_default(DEFAULT_CONFIG_PATH)
    except ConfigError as e:
        print(f"[MOCHI] Config error: {e}")
        return 2
    apply_overrides(config, args)

    print("=" * 60)
    print("  FocusMochi — Starting...")
    print(f"  Camera:   {'mock' if config.vision.detector.use_mock else config.vision.camera.device_index}")
    print(f"  Model:    {'mock' if config.vision.detector.use_mock else config.vision.detector.model_path}")
    print(f"  Detect:   {'every frame' if config.vision.detect_every_frame else 'every other frame'}")
    print(f"  Logs:     {args.log_dir}")
    print("=" * 60)

    audit = get_logger(args.log_dir)
    sink = MemoryStatsSink()
    engine = MochiEngine(
        config,
        stats_sink=sink,
        on_mood_changed=lambda mood: print(f"[MOCHI] Mood -> {mood.value}"),
        audit_logger=audit,
    )

    exit_code = 0
    try:
        engine.start_vision()
        print("[MOCHI] Pipeline active. Press Ctrl+C to exit.")

        started = time.monotonic()
        last_status = started
        while engine.is_vision_running():
            now = time.monotonic()
            if args.duration > 0 and now - started >= args.duration:
                break
            if now - last_status >= STATUS_INTERVAL:
                state = engine.get_pet_state()
                print(f"[MOCHI] mood={state.mood.value} score={state.focus_score:.2f} "
                      f"face={state.face_detected} focus={state.total_focus_minutes:.1f} min")
                last_status = now
            time.sleep(0.1)

    except KeyboardInterrupt:
        print("\n[MOCHI] Interrupted by User.")
    except (FaceDetectorError, PipelineError) as e:
        print(f"[MOCHI] Startup failed: {e}")
        exit_code = 1
    finally:
        print("[MOCHI] Cleaning up...")
        if engine.is_vision_running():
            engine.stop_vision()
        today = sink.get_today_stats()
        if today:
            print(f"[MOCHI] Today: focus={today['total_focus_ms'] / 60000.0:.1f} min "
                  f"distracted={today['total_distracted_ms'] / 60000.0:.1f} min")
        audit.close()
        print("[MOCHI] Shutdown Complete.")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
