"""Capability surface the agent loop drives."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal, Optional, Sequence

PointerKind = Literal["move", "down", "up"]
KeyKind = Literal["down", "up", "char"]

VIEWPORT_SCRIPT = """() => ({
    width: window.innerWidth || 0,
    height: window.innerHeight || 0,
    dpr: window.devicePixelRatio || 1,
})"""


@dataclass(frozen=True)
class ViewportMetrics:
    """Live viewport size in CSS pixels plus device pixel ratio."""

    width: int
    height: int
    device_pixel_ratio: float = 1.0


class ControlledSurface(ABC):
    """Abstract rendering surface: one page the agent observes and drives.

    Implementations synthesize input in CSS pixel coordinates of the
    current viewport.
    """

    # +1 when a positive vertical wheel delta scrolls the page down
    # (DOM convention), -1 for hosts with the inverted convention.
    wheel_delta_sign: int = 1

    @abstractmethod
    async def screenshot(self) -> bytes:
        """Return an encoded PNG of the visible viewport."""

    @abstractmethod
    async def inject_pointer_event(
        self,
        kind: PointerKind,
        x: float,
        y: float,
        button: str = "left",
        click_count: int = 1,
    ) -> None:
        """Synthesize one pointer move/down/up at viewport coordinates."""

    @abstractmethod
    async def inject_wheel_event(self, x: float, y: float, delta_x: float, delta_y: float) -> None:
        """Synthesize a wheel event at viewport coordinates."""

    @abstractmethod
    async def inject_key_event(
        self,
        kind: KeyKind,
        key: str,
        modifiers: Sequence[str] = (),
    ) -> None:
        """Synthesize a key down/up, or a single character for ``char``."""

    @abstractmethod
    async def insert_text(self, text: str) -> None:
        """Insert text into the focused element in one step."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Load a URL."""

    @abstractmethod
    async def go_back(self) -> None:
        """Go back in history if possible."""

    @abstractmethod
    async def go_forward(self) -> None:
        """Go forward in history if possible."""

    @abstractmethod
    def current_url(self) -> str:
        """Return the URL currently displayed."""

    @abstractmethod
    async def run_script(self, code: str, arg: Optional[Any] = None) -> Any:
        """Evaluate a JavaScript function expression in the page."""

    @abstractmethod
    async def is_loading(self) -> bool:
        """True while a navigation is still in flight."""

    @abstractmethod
    async def document_ready_state(self) -> str:
        """Return ``document.readyState``."""

    async def viewport_metrics(self) -> Optional[ViewportMetrics]:
        """Read the live viewport, or None when the page cannot answer."""
        result = await self.run_script(VIEWPORT_SCRIPT)
        if not isinstance(result, dict):
            return None
        width = int(result.get("width") or 0)
        height = int(result.get("height") or 0)
        if width <= 0 or height <= 0:
            return None
        dpr = float(result.get("dpr") or 1.0)
        return ViewportMetrics(width=width, height=height, device_pixel_ratio=dpr if dpr > 0 else 1.0)
