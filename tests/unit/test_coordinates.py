"""Unit tests for coordinates module."""
from __future__ import annotations

import pytest

from coordinates import CoordinateMapper, detect_scale, map_frame_rect, map_point, to_surface_coordinate
from frames import FrameTransform
from surfaces.base import ViewportMetrics


def make_transform(**overrides) -> FrameTransform:
    values = dict(
        crop_x=0.0,
        crop_y=0.0,
        crop_width=1440.0,
        crop_height=900.0,
        device_pixel_ratio=1.0,
        viewport_width=1440,
        viewport_height=900,
        frame_width=1440,
        frame_height=900,
    )
    values.update(overrides)
    return FrameTransform(**values)


class TestDetectScale:
    def test_fractions(self):
        assert detect_scale(0.5, 0.25) == 1.0

    def test_grid(self):
        assert detect_scale(500, 0.5) == 1000.0
        assert detect_scale(12, 900) == 1000.0


class TestMapPoint:
    def test_center_of_grid(self):
        assert map_point(500, 500, make_transform()) == (720, 450)

    def test_fraction_input(self):
        assert map_point(0.5, 0.5, make_transform()) == (720, 450)

    def test_extremes_clamped_inside_viewport(self):
        transform = make_transform()
        assert map_point(1000, 1000, transform) == (1439, 899)
        assert map_point(-50, -50, transform) == (0, 0)
        assert map_point(5000, 5000, transform) == (1439, 899)

    def test_crop_offset_applied(self):
        # 1600x900 viewport cropped to 1440x900, 80px trimmed on each side.
        transform = make_transform(crop_x=80.0, viewport_width=1600)
        x, y = map_point(0, 0, transform)
        assert (x, y) == (80, 0)

    def test_monotonic_per_axis(self):
        transform = make_transform(crop_x=40.0, crop_width=1200.0)
        xs = [map_point(v, 500, transform)[0] for v in range(0, 1001, 25)]
        assert xs == sorted(xs)

    def test_device_pixel_ratio_does_not_leak(self):
        transform = make_transform(device_pixel_ratio=2.0)
        assert map_point(500, 500, transform) == (720, 450)

    def test_live_viewport_within_tolerance_ignored(self):
        live = ViewportMetrics(1460, 900)
        assert map_point(500, 500, make_transform(), live) == (720, 450)

    def test_smaller_live_viewport_within_tolerance_clamped(self):
        live = ViewportMetrics(1400, 880)
        assert map_point(500, 500, make_transform(), live) == (720, 450)
        assert map_point(1000, 1000, make_transform(), live) == (1399, 879)

    def test_resized_viewport_rescaled(self):
        live = ViewportMetrics(720, 450)
        x, y = map_point(500, 500, make_transform(), live)
        assert (x, y) == (360, 225)
        assert map_point(1000, 1000, make_transform(), live) == (719, 449)

    def test_no_transform_uses_live_viewport(self):
        assert map_point(500, 500, None, ViewportMetrics(1000, 800)) == (500, 400)

    def test_no_transform_and_no_viewport_raises(self):
        with pytest.raises(ValueError):
            map_point(500, 500, None, None)


class TestToSurfaceCoordinate:
    def test_explicit_scale(self):
        assert to_surface_coordinate(250, 1000.0, "x", make_transform()) == 360

    def test_y_axis(self):
        assert to_surface_coordinate(0.5, 1.0, "y", make_transform()) == 450


class TestFrameSpace:
    def test_rect_mapping_with_downscaled_frame(self):
        transform = make_transform(
            crop_width=2880.0 / 2,
            crop_height=1800.0 / 2,
            device_pixel_ratio=2.0,
            frame_width=720,
            frame_height=450,
        )
        assert map_frame_rect(360, 225, 72, 45, transform) == (720, 450, 144, 90)

    def test_mapper_uses_tolerance(self):
        mapper = CoordinateMapper(tolerance=0.5)
        live = ViewportMetrics(1000, 900)
        # Mismatch under 50% keeps frame-space coordinates.
        assert mapper.map(1000, 0, make_transform(), live) == (1439, 0)
