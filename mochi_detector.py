"""
FocusMochi — BlazeFace Face Detector
====================================
Turns raw BlazeFace (short-range, 128x128) output into a ranked,
de-duplicated list of FaceDetection objects.

Model: resources/models/blazeface.onnx (1x3x128x128 input, [-1, 1])
Output: regressors [896, 16] + classificators [896] (raw logits)

Decoding:
  1. confidence = sigmoid(logit); keep anchors above the threshold
  2. box centre/size and 6 landmarks = anchor centre + offset / 128,
     every coordinate clamped to [0, 1]
  3. sort by confidence, greedy NMS (IoU > nms_threshold suppressed)

Anchors (reference configuration, 896 total):
  stride 8  -> 16x16 cells x 2 anchors = 512
  stride 16 ->  8x8  cells x 6 anchors = 384

The model itself sits behind ModelExecutor so the decoder can run with
the real ONNX session or the deterministic MockModelExecutor.
"""

from __future__ import annotations

import logging
import math
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import onnxruntime as ort

from mochi_config import DetectorConfig
from mochi_types import NUM_LANDMARKS, FaceDetection

_log = logging.getLogger("MochiDetector")

BLAZEFACE_INPUT_SIZE = 128
NUM_ANCHORS = 896
_STRIDES = (8, 16)
_ANCHORS_PER_CELL = (2, 6)
_REGRESSION_SIZE = 4 + NUM_LANDMARKS * 2   # 16
_LOGIT_CLIP = 100.0
_IOU_EPS = 1e-6

BBox = Tuple[float, float, float, float]


# ═══════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════

class FaceDetectorError(Exception):
    """Base class for detector failures."""


class ModelLoadError(FaceDetectorError):
    """Model or anchor file could not be loaded. Fatal at startup."""


class InferenceError(FaceDetectorError):
    """Model run failed or produced tensors of the wrong shape."""


class ImageError(FaceDetectorError):
    """Input frame buffer does not match its declared size."""


# ═══════════════════════════════════════════════════════════════
# Anchors
# ═══════════════════════════════════════════════════════════════

def generate_anchors(
    input_size: int = BLAZEFACE_INPUT_SIZE,
    strides: Sequence[int] = _STRIDES,
    anchors_per_cell: Sequence[int] = _ANCHORS_PER_CELL,
) -> np.ndarray:
    """Generate the SSD-style anchor centres, shape [A, 2] (x, y) normalized."""
    anchors = []
    for stride, count in zip(strides, anchors_per_cell):
        grid_size = input_size // stride
        for y in range(grid_size):
            for x in range(grid_size):
                centre = ((x + 0.5) / grid_size, (y + 0.5) / grid_size)
                anchors.extend([centre] * count)
    return np.array(anchors, dtype=np.float32)


def load_anchors(path: str, expected_count: int = NUM_ANCHORS) -> np.ndarray:
    """Load anchor centres from a .npy file.

    Accepts a flat/[A, 2] array of 2*A floats, or a MediaPipe-style
    [A, 4] table (x, y, w, h) of which only the centres are used.
    A file that exists but cannot be parsed, or has the wrong length,
    falls back to the generated grid.

    Raises:
        ModelLoadError: if the file does not exist or cannot be opened.
    """
    if not os.path.exists(path):
        raise ModelLoadError(f"Anchors file missing: {path}")

    try:
        data = np.load(path, allow_pickle=False)
    except OSError as e:
        raise ModelLoadError(f"Open anchors file error: {e}") from e
    except (ValueError, EOFError) as e:
        _log.warning("Anchors file %s unreadable (%s), using generated anchors", path, e)
        return generate_anchors()

    if not isinstance(data, np.ndarray) or not np.issubdtype(data.dtype, np.number):
        _log.warning("Anchors file %s is not a numeric array, using generated anchors", path)
        return generate_anchors()

    flat = data.astype(np.float32).ravel()
    if flat.size == expected_count * 2:
        return flat.reshape(expected_count, 2)
    if flat.size == expected_count * 4:
        return np.ascontiguousarray(flat.reshape(expected_count, 4)[:, :2])

    _log.warning(
        "Anchors file parsing failed (got %d floats, expected %d), using generated anchors",
        flat.size, expected_count * 2,
    )
    return generate_anchors()


# ═══════════════════════════════════════════════════════════════
# Geometry
# ═══════════════════════════════════════════════════════════════

def calculate_iou(box1: BBox, box2: BBox) -> float:
    """Intersection-over-union of two (x_min, y_min, x_max, y_max) boxes."""
    x1_1, y1_1, x2_1, y2_1 = box1
    x1_2, y1_2, x2_2, y2_2 = box2

    inter_w = max(min(x2_1, x2_2) - max(x1_1, x1_2), 0.0)
    inter_h = max(min(y2_1, y2_2) - max(y1_1, y1_2), 0.0)
    inter_area = inter_w * inter_h

    area1 = (x2_1 - x1_1) * (y2_1 - y1_1)
    area2 = (x2_2 - x1_2) * (y2_2 - y1_2)

    return inter_area / (area1 + area2 - inter_area + _IOU_EPS)


def non_max_suppression(
    detections: List[FaceDetection],
    iou_threshold: float,
) -> List[FaceDetection]:
    """Greedy NMS over detections already sorted by confidence (descending)."""
    keep: List[FaceDetection] = []
    suppressed = [False] * len(detections)

    for i, det in enumerate(detections):
        if suppressed[i]:
            continue
        keep.append(det)
        for j in range(i + 1, len(detections)):
            if not suppressed[j] and calculate_iou(det.bbox, detections[j].bbox) > iou_threshold:
                suppressed[j] = True

    return keep


def _clamp01(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def preprocess(
    image_data: Union[np.ndarray, bytes, bytearray],
    width: int,
    height: int,
    input_size: int = BLAZEFACE_INPUT_SIZE,
) -> np.ndarray:
    """RGB buffer -> [1, 3, S, S] float32 tensor normalized to [-1, 1].

    Raises:
        ImageError: if the buffer length is not width * height * 3.
    """
    if isinstance(image_data, (bytes, bytearray, memoryview)):
        pixels = np.frombuffer(image_data, dtype=np.uint8)
    else:
        pixels = np.asarray(image_data, dtype=np.uint8).reshape(-1)

    if width <= 0 or height <= 0 or pixels.size != width * height * 3:
        raise ImageError(
            f"Invalid image data: {pixels.size} bytes for {width}x{height} RGB"
        )

    img = pixels.reshape(height, width, 3)
    resized = cv2.resize(img, (input_size, input_size), interpolation=cv2.INTER_LINEAR)

    img_norm = (resized.astype(np.float32) / 127.5) - 1.0
    tensor = np.transpose(img_norm, (2, 0, 1))[np.newaxis, ...]   # HWC -> NCHW
    return np.ascontiguousarray(tensor, dtype=np.float32)


# ═══════════════════════════════════════════════════════════════
# Model executors
# ═══════════════════════════════════════════════════════════════

class ModelExecutor(ABC):
    """Runs the BlazeFace network on one preprocessed tensor."""

    @abstractmethod
    def run(self, input_tensor: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return (regressors [A, 16], classificators [A]) for a [1, 3, 128, 128] input."""

    def release(self) -> None:
        """Optional cleanup logic on shutdown."""


class OnnxModelExecutor(ModelExecutor):
    """onnxruntime session for blazeface.onnx."""

    # Priority: CUDA -> CoreML -> CPU (only those actually installed)
    PREFERRED_PROVIDERS = ("CUDAExecutionProvider", "CoreMLExecutionProvider", "CPUExecutionProvider")

    def __init__(self, model_path: str):
        if not os.path.exists(model_path):
            raise ModelLoadError(f"BlazeFace model missing: {model_path}")

        available = ort.get_available_providers()
        providers = [p for p in self.PREFERRED_PROVIDERS if p in available] or ["CPUExecutionProvider"]

        try:
            self.session = ort.InferenceSession(model_path, providers=providers)
        except Exception as e:
            _log.warning("BlazeFace session init failed with %s: %s. Fallback to CPU.", providers, e)
            try:
                self.session = ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])
            except Exception as cpu_err:
                raise ModelLoadError(f"Load model error: {cpu_err}") from cpu_err

        self.input_name = self.session.get_inputs()[0].name
        _log.info("BlazeFace model loaded from: %s", model_path)

    def run(self, input_tensor: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        try:
            outputs = self.session.run(None, {self.input_name: input_tensor})
        except Exception as e:
            raise InferenceError(f"Inference error: {e}") from e

        if len(outputs) < 2:
            raise InferenceError(f"Expected 2 model outputs, got {len(outputs)}")

        # Exporters do not agree on output order; the classifier has a trailing 1
        out0, out1 = np.asarray(outputs[0]), np.asarray(outputs[1])
        if out0.shape[-1] == 1:
            return out1, out0
        return out0, out1


class MockModelExecutor(ModelExecutor):
    """Deterministic stand-in for the network: one attentive, centred face.

    The tensors are built against the real anchor grid, so they go
    through exactly the same decode/NMS path as model output.
    """

    CONFIDENCE = 0.95
    BBOX: BBox = (0.30, 0.20, 0.70, 0.575)
    LANDMARKS = (
        (0.40, 0.32),  # right eye
        (0.60, 0.32),  # left eye
        (0.50, 0.42),  # nose
        (0.50, 0.50),  # mouth
        (0.28, 0.35),  # right ear
        (0.72, 0.35),  # left ear
    )
    _BACKGROUND_LOGIT = -10.0

    def __init__(self, anchors: np.ndarray, input_size: int = BLAZEFACE_INPUT_SIZE):
        anchors = np.asarray(anchors, dtype=np.float32)
        x1, y1, x2, y2 = self.BBOX
        cx, cy = (x1 + x2) / 2.0, (y1 + y2) / 2.0

        self._classificators = np.full(len(anchors), self._BACKGROUND_LOGIT, dtype=np.float32)
        self._regressors = np.zeros((len(anchors), _REGRESSION_SIZE), dtype=np.float32)

        idx = int(np.argmin(np.sum((anchors - np.array([cx, cy], dtype=np.float32)) ** 2, axis=1)))
        ax, ay = float(anchors[idx, 0]), float(anchors[idx, 1])

        self._classificators[idx] = math.log(self.CONFIDENCE / (1.0 - self.CONFIDENCE))
        row = [(cx - ax) * input_size, (cy - ay) * input_size,
               (x2 - x1) * input_size, (y2 - y1) * input_size]
        for lx, ly in self.LANDMARKS:
            row.extend([(lx - ax) * input_size, (ly - ay) * input_size])
        self._regressors[idx] = row

    def run(self, input_tensor: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return self._regressors.copy(), self._classificators.copy()


# ═══════════════════════════════════════════════════════════════
# BlazeFaceDetector
# ═══════════════════════════════════════════════════════════════

class BlazeFaceDetector:
    """Decode BlazeFace output into FaceDetection lists."""

    def __init__(
        self,
        executor: ModelExecutor,
        anchors: Optional[np.ndarray] = None,
        confidence_threshold: float = 0.5,
        nms_threshold: float = 0.3,
        input_size: int = BLAZEFACE_INPUT_SIZE,
    ) -> None:
        self._executor = executor
        self.input_size = input_size
        self.anchors = generate_anchors(input_size) if anchors is None else np.asarray(anchors, dtype=np.float32)
        if self.anchors.ndim != 2 or self.anchors.shape[1] != 2 or len(self.anchors) == 0:
            raise ModelLoadError(f"Anchors must have shape [A, 2], got {self.anchors.shape}")

        self._confidence_threshold = _clamp01(confidence_threshold)
        self._nms_threshold = nms_threshold

    @property
    def confidence_threshold(self) -> float:
        return self._confidence_threshold

    @property
    def nms_threshold(self) -> float:
        return self._nms_threshold

    def set_confidence_threshold(self, threshold: float) -> None:
        self._confidence_threshold = _clamp01(threshold)

    def set_nms_threshold(self, threshold: float) -> None:
        self._nms_threshold = threshold

    def detect(
        self,
        image_data: Union[np.ndarray, bytes, bytearray],
        width: int,
        height: int,
    ) -> List[FaceDetection]:
        """Detect faces in one RGB frame.

        Returns:
            Detections sorted by confidence (descending); empty if no face.
        """
        tensor = preprocess(image_data, width, height, self.input_size)
        regressors, classificators = self._executor.run(tensor)
        return self.decode(regressors, classificators)

    def decode(self, regressors: np.ndarray, classificators: np.ndarray) -> List[FaceDetection]:
        """Decode raw tensors against the anchor grid, then apply NMS."""
        reg, logits = self._normalize_shapes(regressors, classificators)

        scores = 1.0 / (1.0 + np.exp(-np.clip(logits, -_LOGIT_CLIP, _LOGIT_CLIP)))
        candidates = np.nonzero(scores > self._confidence_threshold)[0]

        size = float(self.input_size)
        detections: List[FaceDetection] = []
        for i in candidates:
            anchor_x = float(self.anchors[i, 0])
            anchor_y = float(self.anchors[i, 1])
            r = reg[i]

            cx = anchor_x + float(r[0]) / size
            cy = anchor_y + float(r[1]) / size
            w = float(r[2]) / size
            h = float(r[3]) / size

            bbox = (
                _clamp01(cx - w / 2.0),
                _clamp01(cy - h / 2.0),
                _clamp01(cx + w / 2.0),
                _clamp01(cy + h / 2.0),
            )
            landmarks = tuple(
                (
                    _clamp01(anchor_x + float(r[4 + j * 2]) / size),
                    _clamp01(anchor_y + float(r[5 + j * 2]) / size),
                )
                for j in range(NUM_LANDMARKS)
            )
            detections.append(FaceDetection(
                confidence=float(scores[i]),
                bbox=bbox,
                landmarks=landmarks,
            ))

        detections.sort(key=lambda d: d.confidence, reverse=True)
        return non_max_suppression(detections, self._nms_threshold)

    def release(self) -> None:
        self._executor.release()

    def _normalize_shapes(
        self,
        regressors: np.ndarray,
        classificators: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Squeeze [1, A, 16] / [1, A, 1] layouts and check against the anchor count."""
        reg = np.asarray(regressors, dtype=np.float32)
        logits = np.asarray(classificators, dtype=np.float32)

        if reg.ndim == 3 and reg.shape[0] == 1:
            reg = reg[0]
        if logits.ndim == 3 and logits.shape[0] == 1 and logits.shape[2] == 1:
            logits = logits[0, :, 0]
        elif logits.ndim == 2 and logits.shape[1] == 1:
            logits = logits[:, 0]
        elif logits.ndim == 2 and logits.shape[0] == 1:
            logits = logits[0]

        count = len(self.anchors)
        if reg.shape != (count, _REGRESSION_SIZE):
            raise InferenceError(
                f"Regressors shape {tuple(np.shape(regressors))} does not match [{count}, {_REGRESSION_SIZE}]"
            )
        if logits.shape != (count,):
            raise InferenceError(
                f"Classificators shape {tuple(np.shape(classificators))} does not match [{count}]"
            )
        return reg, logits


def create_detector(config: DetectorConfig) -> BlazeFaceDetector:
    """Build a detector with the real ONNX executor or the mock one.

    Raises:
        ModelLoadError: if the model (or an explicitly configured anchors
                        file) cannot be opened.
    """
    if config.use_mock:
        anchors = generate_anchors()
        executor: ModelExecutor = MockModelExecutor(anchors)
        _log.info("BlazeFace detector created in MOCK mode")
    else:
        executor = OnnxModelExecutor(config.model_path)
        anchors = load_anchors(config.anchors_path) if config.anchors_path else generate_anchors()

    return BlazeFaceDetector(
        executor,
        anchors,
        confidence_threshold=config.confidence_threshold,
        nms_threshold=config.nms_threshold,
    )
