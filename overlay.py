"""Fire-and-forget overlay event protocol and sinks."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from exceptions import SurfaceError
from surfaces.base import ControlledSurface

OverlayEventType = Literal[
    "start",
    "log",
    "pointer",
    "highlight",
    "highlight-point",
    "highlight-clear",
    "end",
]


@dataclass
class OverlayEvent:
    """One overlay event keyed by run id."""

    type: OverlayEventType
    run_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "runId": self.run_id, **self.payload}

    @classmethod
    def start(cls, run_id: str) -> "OverlayEvent":
        return cls("start", run_id)

    @classmethod
    def log(cls, run_id: str, text: str) -> "OverlayEvent":
        return cls("log", run_id, {"text": text})

    @classmethod
    def pointer(cls, run_id: str, x: float, y: float, mode: str = "pointer") -> "OverlayEvent":
        return cls("pointer", run_id, {"x": x, "y": y, "mode": mode})

    @classmethod
    def highlight(cls, run_id: str, x: float, y: float, w: float, h: float) -> "OverlayEvent":
        return cls("highlight", run_id, {"rect": {"x": x, "y": y, "w": w, "h": h}})

    @classmethod
    def highlight_point(cls, run_id: str, x: float, y: float) -> "OverlayEvent":
        return cls("highlight-point", run_id, {"x": x, "y": y})

    @classmethod
    def highlight_clear(cls, run_id: str) -> "OverlayEvent":
        return cls("highlight-clear", run_id)

    @classmethod
    def end(cls, run_id: str) -> "OverlayEvent":
        return cls("end", run_id)


class OverlaySink(ABC):
    """Receives overlay events. Sinks never raise into the agent loop."""

    @abstractmethod
    async def send(self, event: OverlayEvent) -> None:
        """Deliver one event."""


class NullOverlay(OverlaySink):
    """Discards every event."""

    async def send(self, event: OverlayEvent) -> None:
        return None


class RecordingOverlay(OverlaySink):
    """Keeps every event in memory, for tests and traces."""

    def __init__(self) -> None:
        self.events: List[OverlayEvent] = []

    async def send(self, event: OverlayEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type for e in self.events]


OVERLAY_RENDER_SCRIPT = """(evt) => {
    const ATTR = 'data-pagepilot-overlay';
    let root = document.querySelector(`[${ATTR}="root"]`);
    if (!root) {
        if (!document.body) return false;
        root = document.createElement('div');
        root.setAttribute(ATTR, 'root');
        root.style.cssText = 'position:fixed;inset:0;pointer-events:none;z-index:2147483647;';

        const log = document.createElement('div');
        log.setAttribute(ATTR, 'log');
        log.style.cssText = `
            position: fixed; bottom: 8px; right: 8px; max-width: 42vw;
            padding: 10px 12px; border-radius: 10px;
            font: 12px/1.45 "Fira Code", Menlo, Consolas, monospace;
            color: rgba(255,255,255,0.96);
            background: linear-gradient(145deg, rgba(12,17,28,0.92), rgba(20,32,52,0.9));
            border: 1px solid rgba(255,255,255,0.14);
            box-shadow: 0 8px 20px rgba(0,0,0,0.45);
            white-space: pre-wrap; max-height: 42vh; overflow: hidden;
            display: none; flex-direction: column; gap: 4px;
        `;
        root.appendChild(log);

        const pointer = document.createElement('div');
        pointer.setAttribute(ATTR, 'pointer');
        pointer.style.cssText = `
            position: fixed; width: 30px; height: 30px; border-radius: 50%;
            border: 2px solid #5bd1ff; background: rgba(91,209,255,0.15);
            box-shadow: 0 0 12px rgba(91,209,255,0.65);
            transform: translate(-50%, -50%); display: none;
            transition: left 120ms ease, top 120ms ease;
        `;
        root.appendChild(pointer);

        const box = document.createElement('div');
        box.setAttribute(ATTR, 'highlight');
        box.style.cssText = `
            position: fixed; border: 2px solid #ffb347; border-radius: 6px;
            background: rgba(255,179,71,0.12); display: none;
        `;
        root.appendChild(box);
        document.body.appendChild(root);
    }

    const log = root.querySelector(`[${ATTR}="log"]`);
    const pointer = root.querySelector(`[${ATTR}="pointer"]`);
    const box = root.querySelector(`[${ATTR}="highlight"]`);

    switch (evt.type) {
        case 'start':
            root.dataset.runId = evt.runId;
            log.innerHTML = '';
            log.style.display = 'flex';
            break;
        case 'log': {
            const line = document.createElement('div');
            line.textContent = evt.text;
            log.appendChild(line);
            while (log.childElementCount > 8) log.removeChild(log.firstChild);
            log.style.display = 'flex';
            break;
        }
        case 'pointer':
            pointer.style.left = `${evt.x}px`;
            pointer.style.top = `${evt.y}px`;
            pointer.style.borderRadius = evt.mode === 'text' ? '3px' : '50%';
            pointer.style.width = evt.mode === 'text' ? '4px' : '30px';
            pointer.style.display = 'block';
            break;
        case 'highlight':
            box.style.left = `${evt.rect.x}px`;
            box.style.top = `${evt.rect.y}px`;
            box.style.width = `${evt.rect.w}px`;
            box.style.height = `${evt.rect.h}px`;
            box.style.borderRadius = '6px';
            box.style.display = 'block';
            setTimeout(() => { box.style.display = 'none'; }, 900);
            break;
        case 'highlight-point':
            box.style.left = `${evt.x - 14}px`;
            box.style.top = `${evt.y - 14}px`;
            box.style.width = '28px';
            box.style.height = '28px';
            box.style.borderRadius = '50%';
            box.style.display = 'block';
            setTimeout(() => { box.style.display = 'none'; }, 900);
            break;
        case 'highlight-clear':
            box.style.display = 'none';
            break;
        case 'end':
            pointer.style.display = 'none';
            box.style.display = 'none';
            setTimeout(() => { log.style.display = 'none'; }, 1500);
            break;
    }
    return true;
}"""


class PageOverlay(OverlaySink):
    """Renders overlay events inside the controlled page itself."""

    def __init__(self, surface: ControlledSurface, logger: Optional[logging.Logger] = None):
        self.surface = surface
        self.logger = logger or logging.getLogger("pagepilot.overlay")
        self.active_run_id: Optional[str] = None

    async def send(self, event: OverlayEvent) -> None:
        if event.type == "start":
            self.active_run_id = event.run_id
        elif event.run_id != self.active_run_id:
            self.logger.debug(f"Ignoring stale overlay event {event.type} for run {event.run_id}")
            return
        try:
            await self.surface.run_script(OVERLAY_RENDER_SCRIPT, event.to_dict())
        except SurfaceError as e:
            self.logger.warning(f"Failed to render overlay event {event.type}: {e}")
        if event.type == "end":
            self.active_run_id = None
