"""Tests for the mask cache, blur geometry and in-place compositing."""

from __future__ import annotations

import numpy as np
import pytest

from frameblur.models import Box
from frameblur.processing.blurrer import (
    Blurrer,
    MaskCache,
    blur_geometry,
    create_mask,
    select_boxes,
)
from frameblur.processing.overlay import draw_detection_boxes
from tests.conftest import make_checkerboard, make_frame


class TestMaskCache:
    def test_never_exceeds_capacity(self):
        cache = MaskCache(3)
        for key in range(10):
            cache.get_or_create(key, lambda: np.zeros(1))
            assert len(cache) <= 3
        assert len(cache) == 3

    def test_evicts_least_recently_used(self):
        cache = MaskCache(2)
        cache.get_or_create("a", lambda: np.zeros(1))
        cache.get_or_create("b", lambda: np.zeros(1))
        cache.get_or_create("a", lambda: np.zeros(1))      # a is now most recent
        cache.get_or_create("c", lambda: np.zeros(1))

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_evicted_key_is_recomputed(self):
        cache = MaskCache(1)
        made = []

        def factory():
            made.append(1)
            return np.zeros(1)

        cache.get_or_create("a", factory)
        cache.get_or_create("a", factory)
        cache.get_or_create("b", factory)
        cache.get_or_create("a", factory)

        assert len(made) == 3
        assert cache.hits == 1
        assert cache.misses == 3

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            MaskCache(0)


class TestGeometry:
    def test_interior_box(self):
        xi, yi, wi, hi, radius, feather = blur_geometry(1000, 1000, 0.5, (100, 100, 40, 20))
        assert feather == 3
        assert (xi, yi) == (94, 94)
        assert (wi, hi) == (55, 35)        # 52 and 32 rounded up to multiples of 5
        assert radius == 5

    def test_box_near_edges_grows_past_them(self):
        xi, yi, wi, hi, radius, feather = blur_geometry(100, 100, 1.0, (2, 2, 96, 96))
        assert feather == 8
        assert radius == 48
        assert xi == 2 - 16 - 48
        assert yi == 2 - 16 - 48
        assert wi % 5 == 0 and hi % 5 == 0
        assert xi + wi >= 100 + 48

    def test_multiple_of_five_is_kept(self):
        _, _, wi, hi, _, _ = blur_geometry(1000, 1000, 0.0, (100, 100, 13, 18))
        assert wi == 25
        assert hi == 30

    def test_mask_is_opaque_inside_and_clear_at_corners(self):
        mask = create_mask(60, 40, 10, 4)
        assert mask.shape == (40, 60)
        assert mask.dtype == np.float32
        assert mask[20, 30] == pytest.approx(1.0, abs=1e-3)
        assert mask[0, 0] == pytest.approx(0.0, abs=1e-3)


class TestBlurrer:
    def test_blur_changes_only_the_area(self):
        image = make_checkerboard(200, 200, cell=2)
        original = image.copy()
        blurrer = Blurrer(10)

        blurrer.blur_area(image, 0.5, (80, 80, 40, 40))

        xi, yi, wi, hi, _, _ = blur_geometry(200, 200, 0.5, (80, 80, 40, 40))
        inside = (slice(yi, yi + hi), slice(xi, xi + wi))
        assert not np.array_equal(image[inside], original[inside])
        outside = np.ones(image.shape[:2], dtype=bool)
        outside[inside] = False
        assert np.array_equal(image[outside], original[outside])

        # center of the box is averaged towards gray
        assert 60 < image[100, 100].mean() < 195

    def test_area_outside_frame_is_clipped(self):
        image = make_checkerboard(64, 48)
        Blurrer(10).blur_area(image, 0.8, (-30, -30, 40, 40))
        assert image.shape == (48, 64, 3)

    def test_same_size_boxes_share_a_mask(self, spec):
        blurrer = Blurrer(10)
        image = make_checkerboard(200, 200)
        boxes = [
            Box(label_index=0, confidence=0.9, xywh=(20, 20, 30, 30)),
            Box(label_index=0, confidence=0.9, xywh=(120, 120, 30, 30)),
        ]
        blurrer.blur_boxes(image, spec, boxes)
        assert len(blurrer.cache) == 1
        assert blurrer.cache.hits == 1


class TestSelectBoxes:
    def test_class_toggles(self):
        labels = ("plate", "person")
        plate = Box(label_index=0, confidence=0.9, xywh=(0, 0, 1, 1))
        person = Box(label_index=1, confidence=0.9, xywh=(0, 0, 1, 1))
        other = Box(label_index=5, confidence=0.9, xywh=(0, 0, 1, 1))

        assert select_boxes([plate, person, other], labels, True, True) == [plate, person]
        assert select_boxes([plate, person], labels, False, True) == [plate]
        assert select_boxes([plate, person], labels, True, False) == [person]


class TestOverlay:
    def test_draws_box(self):
        image = make_frame(100, 100)
        draw_detection_boxes(image, ("plate", "person"),
                             [Box(label_index=1, confidence=0.87, xywh=(20, 40, 30, 30))])
        assert image[40, 35].any()      # top edge of the rectangle
        assert not image[55, 35].any()  # box interior untouched
