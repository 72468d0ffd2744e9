"""YOLO-style object detection: letterbox, cv2.dnn inference, candidate decoding + NMS."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Sequence

import cv2
import numpy as np

from frameblur.models import Box, ModelSpec

logger = logging.getLogger(__name__)

# execution provider name -> (cv2.dnn backend, cv2.dnn target)
EXECUTION_PROVIDERS: dict[str, tuple[int, int]] = {
    "cpu": (cv2.dnn.DNN_BACKEND_OPENCV, cv2.dnn.DNN_TARGET_CPU),
    "opencl": (cv2.dnn.DNN_BACKEND_OPENCV, cv2.dnn.DNN_TARGET_OPENCL),
    "opencl_fp16": (cv2.dnn.DNN_BACKEND_OPENCV, cv2.dnn.DNN_TARGET_OPENCL_FP16),
    "cuda": (cv2.dnn.DNN_BACKEND_CUDA, cv2.dnn.DNN_TARGET_CUDA),
    "cuda_fp16": (cv2.dnn.DNN_BACKEND_CUDA, cv2.dnn.DNN_TARGET_CUDA_FP16),
}


@dataclass(frozen=True)
class Letterbox:
    """Resize + padding applied to fit a frame into the model input."""
    scale: float
    left: int
    top: int


def js_round(value: float) -> int:
    """Round half up, matching the rounding used for all pixel geometry."""
    return int(math.floor(value + 0.5))


def letterbox(image: np.ndarray, model_width: int,
              model_height: int) -> tuple[np.ndarray, Letterbox]:
    """Fit image into the model dimensions preserving aspect ratio, centered."""
    img_h, img_w = image.shape[:2]
    scale = min(model_width / img_w, model_height / img_h)
    resized_w = max(1, js_round(img_w * scale))
    resized_h = max(1, js_round(img_h * scale))
    left = js_round((model_width - resized_w) / 2)
    top = js_round((model_height - resized_h) / 2)

    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(image, (resized_w, resized_h), interpolation=interpolation)

    canvas = np.zeros((model_height, model_width, 3), dtype=np.uint8)
    canvas[top:top + resized_h, left:left + resized_w] = resized
    return canvas, Letterbox(scale=scale, left=left, top=top)


def to_tensor(canvas: np.ndarray) -> np.ndarray:
    """Interleaved BGR uint8 -> planar RGB float32 in [0, 1], shape (1, 3, H, W)."""
    rgb = canvas[:, :, ::-1]
    planar = np.transpose(rgb, (2, 0, 1)).astype(np.float32) / 255.0
    return np.ascontiguousarray(planar[np.newaxis, ...])


def decode_candidates(output: np.ndarray, box: Letterbox,
                      threshold_conf: float, threshold_class: float) -> list[Box]:
    """Turn raw model rows [cx, cy, w, h, objectness, *class_scores] into boxes.

    Coordinates are mapped back from model space to source-frame pixels.
    """
    output = np.asarray(output, dtype=np.float32)
    rows = output.reshape(-1, output.shape[-1])
    if rows.shape[1] < 6:
        return []

    objectness = rows[:, 4]
    rows = rows[objectness >= threshold_conf]
    if len(rows) == 0:
        return []

    class_scores = rows[:, 5:]
    best_class = np.argmax(class_scores, axis=1)
    class_conf = class_scores[np.arange(len(rows)), best_class] * rows[:, 4]
    keep = class_conf >= threshold_class

    boxes = []
    for row, label, conf in zip(rows[keep], best_class[keep], class_conf[keep]):
        cx, cy, w, h = (float(v) for v in row[:4])
        boxes.append(Box(
            label_index=int(label),
            confidence=float(conf),
            xywh=(
                (cx - 0.5 * w - box.left) / box.scale,
                (cy - 0.5 * h - box.top) / box.scale,
                w / box.scale,
                h / box.scale,
            ),
        ))
    return boxes


def iou(a: Box, b: Box) -> float:
    """Intersection over union of two axis-aligned boxes."""
    x1, y1, w1, h1 = a.xywh
    x2, y2, w2, h2 = b.xywh
    ix = max(0.0, min(x1 + w1, x2 + w2) - max(x1, x2))
    iy = max(0.0, min(y1 + h1, y2 + h2) - max(y1, y2))
    intersection = ix * iy
    union = w1 * h1 + w2 * h2 - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def non_max_suppression(boxes: Sequence[Box], threshold_iou: float) -> list[Box]:
    """Keep the most confident box of every cluster of overlapping boxes."""
    remaining = sorted(boxes, key=lambda b: b.confidence, reverse=True)
    results = []
    while remaining:
        best = remaining[0]
        results.append(best)
        remaining = [b for b in remaining[1:] if iou(b, best) < threshold_iou]
    return results


def load_net(weights_path: str, execution_providers: Sequence[str],
             model_width: int, model_height: int) -> tuple[Any, str]:
    """Load the ONNX model on the first execution provider that works.

    Each provider is verified with a warm-up forward pass. Returns
    ``(net, provider)``; raises RuntimeError listing every failure.
    """
    errors = []
    warmup = np.zeros((1, 3, model_height, model_width), dtype=np.float32)
    for provider in execution_providers:
        backend_target = EXECUTION_PROVIDERS.get(provider)
        if backend_target is None:
            errors.append(f"{provider}: unknown execution provider")
            continue
        try:
            net = cv2.dnn.readNetFromONNX(weights_path)
            net.setPreferableBackend(backend_target[0])
            net.setPreferableTarget(backend_target[1])
            net.setInput(warmup)
            net.forward()
        except cv2.error as exc:
            logger.debug("Execution provider %s failed: %s", provider, exc)
            errors.append(f"{provider}: {exc}")
            continue
        logger.info("Model %s running on %s", weights_path, provider)
        return net, provider

    raise RuntimeError(
        f"Model initialization failed on all providers "
        f"({', '.join(execution_providers)}) with error(s) {'; '.join(errors)}"
    )


class YoloDetector:
    """Runs one model on full frames and returns boxes in frame coordinates."""

    def __init__(self, spec: ModelSpec, net: Any):
        self._spec = spec
        self._net = net

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    def detect(self, image: np.ndarray) -> list[Box]:
        """Detect objects in a BGR frame. Confidences are class specific."""
        canvas, box = letterbox(image, self._spec.width, self._spec.height)
        self._net.setInput(to_tensor(canvas))
        output = self._net.forward()

        candidates = decode_candidates(
            output, box,
            self._spec.threshold_conf,
            self._spec.threshold_class,
        )
        return non_max_suppression(candidates, self._spec.threshold_iou)


class DetectorWorker:
    """Worker-side model instance. Initialization errors are kept, not raised."""

    def __init__(self, spec: ModelSpec, execution_providers: Sequence[str],
                 use_multithreading: bool, weights_path: str):
        cv2.setNumThreads((os.cpu_count() or 1) if use_multithreading else 1)
        self._detector: YoloDetector | None = None
        self._error: str | None = None
        try:
            net, _provider = load_net(weights_path, execution_providers,
                                      spec.width, spec.height)
            self._detector = YoloDetector(spec, net)
        except (RuntimeError, cv2.error) as exc:
            self._error = str(exc)
            logger.error("%s", self._error)

    def loaded(self) -> str | None:
        return self._error

    def detect(self, image: np.ndarray) -> list[Box]:
        if self._detector is None:
            raise RuntimeError(self._error or "model not initialized")
        return self._detector.detect(image)

    def release(self) -> None:
        self._detector = None
