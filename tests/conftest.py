"""Pytest fixtures for pagepilot tests."""
from __future__ import annotations

import asyncio
import io
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence

import pytest
from PIL import Image

from config import PilotConfig, StabilityConfig
from executor import ELEMENT_RECT_SCRIPT, SCROLL_BY_SCRIPT
from model_client import Done, ToolCall
from overlay import OVERLAY_RENDER_SCRIPT
from surfaces.base import VIEWPORT_SCRIPT, ControlledSurface


def make_png(width: int = 1440, height: int = 900, color: tuple = (255, 255, 255), box: Optional[tuple] = None) -> bytes:
    """Encode a solid PNG, optionally with a black box (left, top, right, bottom)."""
    image = Image.new("RGB", (width, height), color)
    if box is not None:
        image.paste((0, 0, 0), box)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


class FakeSurface(ControlledSurface):
    """In-memory surface that records every primitive it is asked to perform."""

    def __init__(
        self,
        screenshots: Optional[Sequence[bytes]] = None,
        viewport: tuple = (1440, 900),
        dpr: float = 1.0,
        url: str = "https://example.com/",
    ):
        self.screenshots: List[bytes] = list(screenshots or [make_png()])
        self.viewport = viewport
        self.dpr = dpr
        self.url = url
        self.ready_state = "complete"
        self.loading = False
        self.scroll_result: float = 0
        self.element_rect: Optional[dict] = None
        self.fail_screenshots = 0
        self.screenshot_calls = 0
        self.events: List[tuple] = []
        self.overlay_events: List[dict] = []
        self.on_screenshot: Optional[Callable[[], None]] = None

    async def screenshot(self) -> bytes:
        self.screenshot_calls += 1
        if self.on_screenshot is not None:
            self.on_screenshot()
        if self.fail_screenshots > 0:
            self.fail_screenshots -= 1
            raise RuntimeError("capture failed")
        if len(self.screenshots) > 1:
            return self.screenshots.pop(0)
        return self.screenshots[0]

    async def inject_pointer_event(self, kind, x, y, button="left", click_count=1) -> None:
        self.events.append(("pointer", kind, x, y, click_count))

    async def inject_wheel_event(self, x, y, delta_x, delta_y) -> None:
        self.events.append(("wheel", x, y, delta_x, delta_y))

    async def inject_key_event(self, kind, key, modifiers=()) -> None:
        self.events.append(("key", kind, key))

    async def insert_text(self, text: str) -> None:
        self.events.append(("insert", text))

    async def navigate(self, url: str) -> None:
        self.events.append(("navigate", url))
        self.url = url

    async def go_back(self) -> None:
        self.events.append(("back",))

    async def go_forward(self) -> None:
        self.events.append(("forward",))

    def current_url(self) -> str:
        return self.url

    async def run_script(self, code: str, arg: Optional[Any] = None) -> Any:
        if code == VIEWPORT_SCRIPT:
            return {"width": self.viewport[0], "height": self.viewport[1], "dpr": self.dpr}
        if code == SCROLL_BY_SCRIPT:
            self.events.append(("scroll_by", arg))
            return self.scroll_result
        if code == ELEMENT_RECT_SCRIPT:
            return self.element_rect
        if code == OVERLAY_RENDER_SCRIPT:
            self.overlay_events.append(arg)
            return True
        return None

    async def is_loading(self) -> bool:
        return self.loading

    async def document_ready_state(self) -> str:
        return self.ready_state

    def of_kind(self, kind: str) -> List[tuple]:
        return [e for e in self.events if e[0] == kind]


class ScriptedModel:
    """Model client stand-in replaying one list of events per decision."""

    def __init__(self, script: Optional[Iterable[List[Any]]] = None, repeat_last: bool = True):
        self.script = list(script or [])
        self.repeat_last = repeat_last
        self.calls: List[dict] = []
        self.block: Optional[asyncio.Event] = None

    async def stream_decision(self, history, system_instruction, run_id=None):
        self.calls.append(
            {"history": list(history), "system_instruction": system_instruction, "run_id": run_id}
        )
        index = len(self.calls) - 1
        if index < len(self.script):
            events = self.script[index]
        elif self.repeat_last and self.script:
            events = self.script[-1]
        else:
            events = [Done()]
        for event in events:
            if self.block is not None:
                await self.block.wait()
            yield event


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolCall:
    return ToolCall(call_id=call_id, name=name, arguments=arguments)


@pytest.fixture
def png_factory() -> Callable[..., bytes]:
    return make_png


@pytest.fixture
def fake_surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def fast_stability() -> StabilityConfig:
    """Stabilizer settings that keep tests fast."""
    return StabilityConfig(poll_interval=0.0, timeout=0.05, capture_backoff=0.0)


@pytest.fixture
def pilot_config(fast_stability: StabilityConfig) -> PilotConfig:
    config = PilotConfig(stability=fast_stability)
    config.executor.post_action_delay = 0.0
    config.executor.dom_idle_settle = 0.0
    config.learner.enabled = False
    return config


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def clear_pagepilot_env(monkeypatch):
    for var in (
        "PAGEPILOT_BASE_URL",
        "PAGEPILOT_API_KEY",
        "PAGEPILOT_MODEL",
        "PAGEPILOT_MAX_STEPS",
        "PAGEPILOT_LEARNER_ENABLED",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)
