"""Normalized model coordinates to live surface CSS pixels."""
from __future__ import annotations

from typing import Literal, Optional, Tuple

from frames import FrameTransform
from surfaces.base import ViewportMetrics

Axis = Literal["x", "y"]

DEFAULT_VIEWPORT_TOLERANCE = 0.08


def detect_scale(x: float, y: float) -> float:
    """1.0 when both coordinates are already fractions, else the 0-1000 grid."""
    if 0.0 <= x <= 1.0 and 0.0 <= y <= 1.0:
        return 1.0
    return 1000.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _axis_values(
    axis: Axis,
    transform: Optional[FrameTransform],
    live_viewport: Optional[ViewportMetrics],
) -> Tuple[float, float, Optional[int], Optional[int]]:
    """(crop origin, crop size, frame viewport dim, live viewport dim) for one axis."""
    live_dim = None
    if live_viewport is not None:
        live_dim = live_viewport.width if axis == "x" else live_viewport.height
    if transform is None:
        return 0.0, float(live_dim or 0), None, live_dim
    if axis == "x":
        return transform.crop_x, transform.crop_width, transform.viewport_width, live_dim
    return transform.crop_y, transform.crop_height, transform.viewport_height, live_dim


def _fraction_to_surface(
    fraction: float,
    axis: Axis,
    transform: Optional[FrameTransform],
    live_viewport: Optional[ViewportMetrics],
    tolerance: float,
) -> int:
    origin, size, frame_dim, live_dim = _axis_values(axis, transform, live_viewport)
    fraction = _clamp(fraction, 0.0, 1.0)

    if transform is None:
        if not live_dim:
            raise ValueError("Cannot map coordinates without a frame transform or live viewport")
        return int(_clamp(round(fraction * live_dim), 0, live_dim - 1))

    position = origin + fraction * size
    dim = frame_dim
    if live_dim and frame_dim and abs(frame_dim - live_dim) / live_dim > tolerance:
        # The page was resized since the frame was captured.
        position = position * live_dim / frame_dim
        dim = live_dim
    if not dim:
        dim = live_dim or max(1, round(origin + size))
    if live_dim:
        dim = min(dim, live_dim)
    return int(_clamp(round(position), 0, dim - 1))


def to_surface_coordinate(
    value: float,
    scale: float,
    axis: Axis,
    transform: Optional[FrameTransform],
    live_viewport: Optional[ViewportMetrics] = None,
    tolerance: float = DEFAULT_VIEWPORT_TOLERANCE,
) -> int:
    """Map one normalized coordinate onto the live surface."""
    fraction = float(value) / scale if scale else 0.0
    return _fraction_to_surface(fraction, axis, transform, live_viewport, tolerance)


def map_point(
    x: float,
    y: float,
    transform: Optional[FrameTransform],
    live_viewport: Optional[ViewportMetrics] = None,
    tolerance: float = DEFAULT_VIEWPORT_TOLERANCE,
) -> Tuple[int, int]:
    """Map a normalized (x, y) pair, detecting its scale from the range."""
    scale = detect_scale(float(x), float(y))
    return (
        to_surface_coordinate(x, scale, "x", transform, live_viewport, tolerance),
        to_surface_coordinate(y, scale, "y", transform, live_viewport, tolerance),
    )


def map_frame_point(
    px: float,
    py: float,
    transform: FrameTransform,
    live_viewport: Optional[ViewportMetrics] = None,
    tolerance: float = DEFAULT_VIEWPORT_TOLERANCE,
) -> Tuple[int, int]:
    """Map a pixel position in the frame image onto the live surface."""
    fx = px / transform.frame_width if transform.frame_width else 0.0
    fy = py / transform.frame_height if transform.frame_height else 0.0
    return (
        _fraction_to_surface(fx, "x", transform, live_viewport, tolerance),
        _fraction_to_surface(fy, "y", transform, live_viewport, tolerance),
    )


def map_frame_rect(
    x: float,
    y: float,
    width: float,
    height: float,
    transform: FrameTransform,
    live_viewport: Optional[ViewportMetrics] = None,
    tolerance: float = DEFAULT_VIEWPORT_TOLERANCE,
) -> Tuple[int, int, int, int]:
    """Map a frame-space rectangle; returns (x, y, width, height) in surface pixels."""
    left, top = map_frame_point(x, y, transform, live_viewport, tolerance)
    right, bottom = map_frame_point(x + width, y + height, transform, live_viewport, tolerance)
    return left, top, max(0, right - left), max(0, bottom - top)


class CoordinateMapper:
    """Holds the viewport tolerance so callers map with one call."""

    def __init__(self, tolerance: float = DEFAULT_VIEWPORT_TOLERANCE):
        self.tolerance = tolerance

    def map(
        self,
        x: float,
        y: float,
        transform: Optional[FrameTransform],
        live_viewport: Optional[ViewportMetrics] = None,
    ) -> Tuple[int, int]:
        return map_point(x, y, transform, live_viewport, self.tolerance)

    def map_frame_point(
        self,
        px: float,
        py: float,
        transform: FrameTransform,
        live_viewport: Optional[ViewportMetrics] = None,
    ) -> Tuple[int, int]:
        return map_frame_point(px, py, transform, live_viewport, self.tolerance)

    def map_frame_rect(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        transform: FrameTransform,
        live_viewport: Optional[ViewportMetrics] = None,
    ) -> Tuple[int, int, int, int]:
        return map_frame_rect(x, y, width, height, transform, live_viewport, self.tolerance)
