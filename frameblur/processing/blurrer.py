"""Feathered, rounded blur of detection boxes with an LRU cache of blur masks."""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Callable, Hashable, Iterable, Sequence

import cv2
import numpy as np

from frameblur.models import Box, ModelSpec
from frameblur.processing.detector import js_round

logger = logging.getLogger(__name__)

# blur areas are rounded up to multiples of this to improve cache hits
MASK_MODULO = 5
# boxes closer than this to a frame edge get their mask grown past the edge
EDGE_MARGIN = 10


class MaskCache:
    """Fixed-capacity least-recently-used cache."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("mask cache capacity must be at least 1")
        self._capacity = capacity
        self._entries: OrderedDict[Hashable, np.ndarray] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get_or_create(self, key: Hashable,
                      factory: Callable[[], np.ndarray]) -> np.ndarray:
        if key in self._entries:
            self._entries.move_to_end(key)
            self.hits += 1
            return self._entries[key]

        self.misses += 1
        value = factory()
        self._entries[key] = value
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)
        return value


def _round_up(value: int, modulo: int) -> int:
    return -(-value // modulo) * modulo


def create_mask(width: int, height: int, radius: int, feather: int) -> np.ndarray:
    """Rounded rectangle inset by ``feather``, blurred by ``feather / 2``.

    Returns a float32 (height, width) alpha map in [0, 1].
    """
    mask = np.zeros((height, width), dtype=np.uint8)
    x0, y0 = feather, feather
    x1, y1 = width - feather - 1, height - feather - 1
    if x1 >= x0 and y1 >= y0:
        r = max(0, min(radius, (x1 - x0) // 2, (y1 - y0) // 2))
        if r == 0:
            cv2.rectangle(mask, (x0, y0), (x1, y1), 255, -1)
        else:
            cv2.rectangle(mask, (x0 + r, y0), (x1 - r, y1), 255, -1)
            cv2.rectangle(mask, (x0, y0 + r), (x1, y1 - r), 255, -1)
            for cx, cy in ((x0 + r, y0 + r), (x1 - r, y0 + r),
                           (x0 + r, y1 - r), (x1 - r, y1 - r)):
                cv2.circle(mask, (cx, cy), r, 255, -1, lineType=cv2.LINE_AA)

    sigma = feather / 2.0
    if sigma > 0:
        mask = cv2.GaussianBlur(mask, (0, 0), sigmaX=sigma, sigmaY=sigma)
    return mask.astype(np.float32) / 255.0


def stack_blur(region: np.ndarray, radius: int) -> np.ndarray:
    """Stack blur as two box passes (a triangular kernel of the given radius)."""
    ksize = (radius + 1, radius + 1)
    once = cv2.blur(region, ksize, borderType=cv2.BORDER_REPLICATE)
    return cv2.blur(once, ksize, borderType=cv2.BORDER_REPLICATE)


def blur_geometry(frame_width: int, frame_height: int, round_corner_ratio: float,
                  xywh: Sequence[float]) -> tuple[int, int, int, int, int, int]:
    """Compute (x, y, w, h, radius, feather) of the blur rectangle for a box."""
    x, y, w, h = xywh

    # larger transition area for larger boxes
    feather = js_round(max(3.0, max(w, h) / 12.0))

    # err on the side of enlarging the blur area
    xi = math.floor(x - feather * 2)
    yi = math.floor(y - feather * 2)
    wi = math.ceil(w + (x - xi) + feather * 2)
    hi = math.ceil(h + (y - yi) + feather * 2)

    radius = js_round(min(w, h) / 2 * round_corner_ratio)
    if radius > 0:
        if xi < EDGE_MARGIN:
            xi -= radius
            wi += radius
        if yi < EDGE_MARGIN:
            yi -= radius
            hi += radius
        if xi + wi > frame_width - EDGE_MARGIN:
            wi += radius
        if yi + hi > frame_height - EDGE_MARGIN:
            hi += radius

    wi = _round_up(wi, MASK_MODULO)
    hi = _round_up(hi, MASK_MODULO)
    return xi, yi, wi, hi, radius, feather


def select_boxes(boxes: Iterable[Box], labels: Sequence[str],
                 blur_person: bool, blur_plate: bool) -> list[Box]:
    """Filter boxes down to the classes that should be blurred."""
    selected = []
    for box in boxes:
        label = labels[box.label_index] if 0 <= box.label_index < len(labels) else None
        if (label == "person" and blur_person) or (label == "plate" and blur_plate):
            selected.append(box)
    return selected


class Blurrer:
    """Destructively blurs boxes on BGR frames."""

    def __init__(self, cache_size: int):
        self._cache = MaskCache(cache_size)

    @property
    def cache(self) -> MaskCache:
        return self._cache

    def blur_boxes(self, image: np.ndarray, spec: ModelSpec,
                   boxes: Iterable[Box]) -> None:
        for box in boxes:
            ratios = spec.round_corner_ratios
            ratio = ratios[box.label_index] if box.label_index < len(ratios) else 0.0
            self.blur_area(image, ratio, box.xywh)

    def blur_area(self, image: np.ndarray, round_corner_ratio: float,
                  xywh: Sequence[float]) -> None:
        """Blur one box in place. The ratio goes from 0.0 (rectangle) to 1.0 (ellipse)."""
        frame_h, frame_w = image.shape[:2]
        xi, yi, wi, hi, radius, feather = blur_geometry(
            frame_w, frame_h, round_corner_ratio, xywh)

        mask = self._cache.get_or_create(
            (wi, hi, radius, feather),
            lambda: create_mask(wi, hi, radius, feather),
        )

        # increase strength for large areas
        strength = max(10, min(50, js_round(wi * hi / 100)))

        # clip the rectangle to the frame
        x0, y0 = max(0, xi), max(0, yi)
        x1, y1 = min(frame_w, xi + wi), min(frame_h, yi + hi)
        if x1 <= x0 or y1 <= y0:
            return

        plain = image[y0:y1, x0:x1]
        blurred = stack_blur(plain, strength)
        alpha = mask[y0 - yi:y1 - yi, x0 - xi:x1 - xi, np.newaxis]

        out = blurred.astype(np.float32) * alpha + plain.astype(np.float32) * (1.0 - alpha)
        image[y0:y1, x0:x1] = np.clip(out + 0.5, 0, 255).astype(np.uint8)
