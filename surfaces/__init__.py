"""Controlled rendering surfaces for the agent loop."""
from surfaces.base import ControlledSurface, ViewportMetrics

__all__ = [
    "ControlledSurface",
    "ViewportMetrics",
]
