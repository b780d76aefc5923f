"""Action executor: abstract model actions onto primitive surface input."""
from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote_plus

from config import ExecutorConfig, SurfaceConfig
from coordinates import CoordinateMapper
from exceptions import PilotError, SurfaceError
from frames import Frame, FrameStabilizer
from overlay import OverlayEvent, OverlaySink
from run_types import CancellationToken
from surfaces.base import ControlledSurface, ViewportMetrics

# Actions after which the last stabilized frame no longer describes the page.
PAGE_MUTATING_ACTIONS = frozenset(
    {
        "click_at",
        "type_text_at",
        "scroll_document",
        "scroll_at",
        "drag_and_drop",
        "key_combination",
        "navigate",
        "open_page",
        "search",
        "go_back",
        "go_forward",
        "wait",
        "wait_5_seconds",
    }
)

SCROLL_DIRECTIONS = ("up", "down", "left", "right")

KEY_ALIASES = {
    "enter": "Enter",
    "return": "Enter",
    "tab": "Tab",
    "esc": "Escape",
    "escape": "Escape",
    "backspace": "Backspace",
    "delete": "Delete",
    "del": "Delete",
    "insert": "Insert",
    "space": "Space",
    "spacebar": "Space",
    "arrowup": "ArrowUp",
    "up": "ArrowUp",
    "arrowdown": "ArrowDown",
    "down": "ArrowDown",
    "arrowleft": "ArrowLeft",
    "left": "ArrowLeft",
    "arrowright": "ArrowRight",
    "right": "ArrowRight",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
}

MODIFIER_ALIASES = {
    "ctrl": "Control",
    "control": "Control",
    "cmd": "Meta",
    "command": "Meta",
    "meta": "Meta",
    "super": "Meta",
    "win": "Meta",
    "shift": "Shift",
    "alt": "Alt",
    "option": "Alt",
}

# Canonical press order for modifiers.
MODIFIER_ORDER = ("Control", "Meta", "Shift", "Alt")

SCROLL_BY_SCRIPT = """(desired) => {
    const before = window.scrollY || 0;
    try {
        window.scrollBy({ top: desired, left: 0, behavior: 'instant' });
    } catch (e) {
        window.scrollBy(0, desired);
    }
    return (window.scrollY || 0) - before;
}"""

ELEMENT_RECT_SCRIPT = """([vx, vy]) => {
    const stack = typeof document.elementsFromPoint === 'function'
        ? document.elementsFromPoint(vx, vy)
        : [document.elementFromPoint(vx, vy)];
    const interactive = 'a,button,input,textarea,select,label,summary,[role=button],[role=link],'
        + '[role=textbox],[role=checkbox],[role=tab],[role=menuitem],[contenteditable=true],[tabindex]';
    for (const el of stack) {
        if (!el || el.closest('[data-pagepilot-overlay]')) continue;
        const target = el.closest(interactive) || el;
        const rect = target.getBoundingClientRect();
        if (rect.width <= 0 || rect.height <= 0) continue;
        if (rect.width >= window.innerWidth * 0.9 && rect.height >= window.innerHeight * 0.9) return null;
        return { x: rect.x, y: rect.y, width: rect.width, height: rect.height };
    }
    return null;
}"""


@dataclass
class Action:
    """A named model action with its raw arguments."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass
class ActionResult:
    """Outcome of one executed action."""

    name: str
    ok: bool
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    surface_url: str = ""

    def to_response(self) -> Dict[str, Any]:
        """Structured response sent back to the model."""
        payload = {**self.response, "ok": self.ok, "url": self.surface_url}
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class KeyCombination:
    key: str
    modifiers: Tuple[str, ...] = ()


class ActionFailed(PilotError):
    """An action could not be carried out; reported to the model, never raised."""

    pass


def parse_key_combination(keys: str) -> KeyCombination:
    """Parse a ``+``-joined string such as ``ctrl+shift+t``."""
    parts = [p.strip().lower() for p in str(keys or "").split("+") if p.strip()]
    if not parts:
        raise ActionFailed("Missing keys")

    modifiers = []
    for part in parts[:-1]:
        modifier = MODIFIER_ALIASES.get(part)
        if modifier and modifier not in modifiers:
            modifiers.append(modifier)

    raw_key = parts[-1]
    if raw_key in MODIFIER_ALIASES:
        key = MODIFIER_ALIASES[raw_key]
    elif raw_key in KEY_ALIASES:
        key = KEY_ALIASES[raw_key]
    elif len(raw_key) > 1 and raw_key[0] == "f" and raw_key[1:].isdigit() and 1 <= int(raw_key[1:]) <= 12:
        key = raw_key.upper()
    else:
        key = raw_key

    ordered = tuple(m for m in MODIFIER_ORDER if m in modifiers and m != key)
    return KeyCombination(key=key, modifiers=ordered)


def normalize_url(url: str) -> str:
    """Prefix bare hosts with https://."""
    url = url.strip()
    if "://" in url or url.startswith(("about:", "data:", "file:", "javascript:")):
        return url
    return f"https://{url}"


def extract_url(raw: Any) -> str:
    """URL from a string or a mapping with ``url``/``value``."""
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict):
        for key in ("url", "value"):
            value = raw.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return ""


class ActionExecutor:
    """Executes model actions sequentially against one controlled surface."""

    def __init__(
        self,
        surface: ControlledSurface,
        config: Optional[ExecutorConfig] = None,
        surface_config: Optional[SurfaceConfig] = None,
        stabilizer: Optional[FrameStabilizer] = None,
        overlay: Optional[OverlaySink] = None,
        logger: Optional[logging.Logger] = None,
        platform: str = sys.platform,
    ):
        self.surface = surface
        self.config = config or ExecutorConfig()
        self.surface_config = surface_config or SurfaceConfig()
        self.stabilizer = stabilizer or FrameStabilizer()
        self.mapper = CoordinateMapper(self.config.viewport_tolerance)
        self.overlay = overlay
        self.logger = logger or logging.getLogger("pagepilot.executor")
        self.platform = platform

        self.reference_frame: Optional[Frame] = None
        self._reference_consumed = False
        self.run_id: Optional[str] = None
        self.token: Optional[CancellationToken] = None

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "open_web_browser": self._open_web_browser,
            "navigate": self._navigate,
            "open_page": self._navigate,
            "search": self._search,
            "go_back": self._go_back,
            "go_forward": self._go_forward,
            "click_at": self._click_at,
            "hover_at": self._hover_at,
            "type_text_at": self._type_text_at,
            "scroll_document": self._scroll_document,
            "scroll_at": self._scroll_at,
            "drag_and_drop": self._drag_and_drop,
            "key_combination": self._key_combination,
            "wait": self._wait,
            "wait_5_seconds": self._wait_5_seconds,
        }

    @property
    def supported_actions(self) -> list[str]:
        return sorted(self._handlers)

    def bind_run(self, run_id: Optional[str], token: Optional[CancellationToken]) -> None:
        """Attach the active run's id (overlay events) and cancellation token."""
        self.run_id = run_id
        self.token = token

    def set_reference_frame(self, frame: Optional[Frame]) -> None:
        """Frame the next batch of actions was decided on."""
        self.reference_frame = frame
        self._reference_consumed = False

    async def execute(self, action: Action) -> ActionResult:
        """Run one action. Failures become ``ok=False`` results."""
        handler = self._handlers.get(action.name)
        if handler is None:
            return ActionResult(
                name=action.name,
                ok=False,
                error=f"unsupported action {action.name}",
                surface_url=self._current_url(),
            )

        started = time.monotonic()
        try:
            response = await handler(dict(action.args or {}))
            ok, error = True, None
        except ActionFailed as e:
            response, ok, error = {}, False, e.message
        except Exception as e:
            self.logger.error(f"Action {action.name} failed: {e}")
            response, ok, error = {}, False, f"Action failed: {e}"

        if ok and action.name in PAGE_MUTATING_ACTIONS:
            self._reference_consumed = True

        self.logger.debug(
            f"Executed {action.name} ok={ok} in {(time.monotonic() - started) * 1000:.0f}ms"
            + (f" error={error}" if error else "")
        )
        return ActionResult(
            name=action.name,
            ok=ok,
            response=response,
            error=error,
            surface_url=self._current_url(),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation actions
    # ─────────────────────────────────────────────────────────────────────────

    async def _open_web_browser(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _navigate(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = extract_url(args.get("url"))
        if not url:
            raise ActionFailed("Missing url")
        target = normalize_url(url)
        await self.surface.navigate(target)
        return {"navigated_to": target}

    async def _search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if query:
            target = self.surface_config.search_url.replace("{query}", quote_plus(query))
        else:
            target = self.surface_config.home_url
        await self.surface.navigate(target)
        return {"navigated_to": target}

    async def _go_back(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.surface.go_back()
        return {}

    async def _go_forward(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.surface.go_forward()
        return {}

    # ─────────────────────────────────────────────────────────────────────────
    # Pointer actions
    # ─────────────────────────────────────────────────────────────────────────

    async def _click_at(self, args: Dict[str, Any]) -> Dict[str, Any]:
        viewport = await self._prepare_pointer_action()
        x, y = self._map(args, "x", "y", viewport)
        y = await self._ensure_safe_bottom(y, viewport)

        await self.surface.inject_pointer_event("move", x, y)
        await self.surface.inject_pointer_event("down", x, y, click_count=1)
        await self.surface.inject_pointer_event("up", x, y, click_count=1)
        await self._show_pointer(x, y, "pointer")
        return {"x": x, "y": y, "type": "click"}

    async def _hover_at(self, args: Dict[str, Any]) -> Dict[str, Any]:
        viewport = await self._prepare_pointer_action()
        x, y = self._map(args, "x", "y", viewport)
        y = await self._ensure_safe_bottom(y, viewport)

        await self._show_pointer(x, y, "pointer")
        await self.surface.inject_pointer_event("move", x, y)
        return {"x": x, "y": y, "type": "mousemove"}

    async def _type_text_at(self, args: Dict[str, Any]) -> Dict[str, Any]:
        text = args.get("text")
        text = text if isinstance(text, str) else ""
        press_enter = bool(args.get("press_enter", False))
        clear_before = bool(args.get("clear_before_typing", False))

        viewport = await self._prepare_pointer_action()
        x, y = self._map(args, "x", "y", viewport)
        y = await self._ensure_safe_bottom(y, viewport)
        await self._show_pointer(x, y, "text")

        # Double click enters edit mode in rich editors.
        await self.surface.inject_pointer_event("move", x, y)
        await self.surface.inject_pointer_event("down", x, y, click_count=2)
        await self.surface.inject_pointer_event("up", x, y, click_count=2)
        await self._sleep(0.12)

        if clear_before:
            select_mod = "Meta" if self.platform == "darwin" else "Control"
            await self._press(KeyCombination("a", (select_mod,)))
            await self._press(KeyCombination("Backspace"))
            await self._sleep(0.06)

        if text:
            if self.config.typing_mode == "keys":
                for ch in text:
                    await self.surface.inject_key_event("char", ch)
            else:
                await self.surface.insert_text(text)

        if press_enter:
            await self._press(KeyCombination("Enter"))

        return {"x": x, "y": y, "typed_chars": len(text), "submitted": press_enter}

    async def _drag_and_drop(self, args: Dict[str, Any]) -> Dict[str, Any]:
        viewport = await self._prepare_pointer_action()
        x, y = self._map(args, "x", "y", viewport)
        dest_x, dest_y = self._map(args, "destination_x", "destination_y", viewport)

        adjusted = await self._ensure_safe_bottom(y, viewport)
        dest_y = max(0, dest_y - (y - adjusted))
        y = adjusted
        dest_y = await self._ensure_safe_bottom(dest_y, viewport)

        await self.surface.inject_pointer_event("move", x, y)
        await self.surface.inject_pointer_event("down", x, y, click_count=1)
        await self.surface.inject_pointer_event("move", dest_x, dest_y)
        await self.surface.inject_pointer_event("up", dest_x, dest_y, click_count=1)
        await self._show_pointer(dest_x, dest_y, "pointer")
        return {"x": x, "y": y, "destination_x": dest_x, "destination_y": dest_y}

    # ─────────────────────────────────────────────────────────────────────────
    # Scrolling, keys, waiting
    # ─────────────────────────────────────────────────────────────────────────

    async def _scroll_document(self, args: Dict[str, Any]) -> Dict[str, Any]:
        direction = self._direction(args)
        viewport = await self._live_viewport()
        cx, cy = viewport.width // 2, viewport.height // 2
        dim = viewport.width if direction in ("left", "right") else viewport.height
        magnitude = round(dim * 0.75)
        await self._wheel(cx, cy, direction, magnitude)
        return {"direction": direction, "magnitude": magnitude}

    async def _scroll_at(self, args: Dict[str, Any]) -> Dict[str, Any]:
        direction = self._direction(args)
        try:
            magnitude = abs(float(args.get("magnitude", 400)))
        except (TypeError, ValueError):
            magnitude = 400.0
        viewport = await self._live_viewport()
        x, y = self._map(args, "x", "y", viewport)
        await self._wheel(x, y, direction, magnitude)
        return {"x": x, "y": y, "direction": direction, "magnitude": magnitude}

    async def _key_combination(self, args: Dict[str, Any]) -> Dict[str, Any]:
        keys = args.get("keys")
        if isinstance(keys, list):
            keys = "+".join(str(k) for k in keys)
        combo = parse_key_combination(str(keys or ""))
        await self._press(combo)
        return {"keys": keys, "key": combo.key, "modifiers": list(combo.modifiers)}

    async def _wait(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            seconds = float(args.get("seconds", 5))
        except (TypeError, ValueError):
            seconds = 5.0
        seconds = max(0.0, min(self.config.max_wait_seconds, seconds))
        cancelled = await self._sleep(seconds)
        return {"waited_seconds": seconds, "cancelled": cancelled}

    async def _wait_5_seconds(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self._wait({"seconds": 5})

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def _prepare_pointer_action(self) -> ViewportMetrics:
        await self._wait_for_dom_ready()
        await self._check_drift()
        return await self._live_viewport()

    async def _wait_for_dom_ready(self) -> None:
        """Poll readiness for a bounded time, then let the DOM settle briefly."""
        deadline = time.monotonic() + self.config.dom_ready_timeout
        waited = False
        while True:
            try:
                state = await self.surface.document_ready_state()
                loading = await self.surface.is_loading()
            except SurfaceError as e:
                self.logger.debug(f"Readiness probe failed: {e}")
                state, loading = "", True
            if state in ("interactive", "complete") and not loading:
                break
            if time.monotonic() >= deadline:
                self.logger.debug(f"DOM not ready after {self.config.dom_ready_timeout}s (state={state!r})")
                break
            waited = True
            if await self._sleep(0.05):
                return
        if waited and self.config.dom_idle_settle > 0:
            await self._sleep(self.config.dom_idle_settle)

    async def _check_drift(self) -> None:
        frame = self.reference_frame
        if frame is None or self._reference_consumed:
            return
        try:
            drift = await self.stabilizer.measure_drift(self.surface, frame)
        except PilotError as e:
            self.logger.debug(f"Drift check skipped: {e}")
            return
        if drift > self.config.drift_threshold:
            raise ActionFailed(
                "page changed since the last screenshot; take a new look before acting",
                {"drift": round(drift, 4)},
            )

    async def _live_viewport(self) -> ViewportMetrics:
        try:
            viewport = await self.surface.viewport_metrics()
        except SurfaceError as e:
            self.logger.debug(f"Live viewport unavailable: {e}")
            viewport = None
        if viewport is not None:
            return viewport
        frame = self.reference_frame
        if frame is not None:
            t = frame.transform
            return ViewportMetrics(t.viewport_width, t.viewport_height, t.device_pixel_ratio)
        return ViewportMetrics(self.surface_config.viewport_width, self.surface_config.viewport_height)

    def _map(self, args: Dict[str, Any], x_key: str, y_key: str, viewport: ViewportMetrics) -> Tuple[int, int]:
        try:
            x = float(args[x_key])
            y = float(args[y_key])
        except (KeyError, TypeError, ValueError):
            raise ActionFailed(f"Missing or invalid coordinates {x_key}/{y_key}")
        transform = self.reference_frame.transform if self.reference_frame else None
        return self.mapper.map(x, y, transform, viewport)

    async def _ensure_safe_bottom(self, y: int, viewport: ViewportMetrics) -> int:
        """Scroll targets near the bottom edge into a safer band; returns the adjusted y."""
        threshold = viewport.height - self.config.safe_bottom_margin
        if self.config.safe_bottom_margin <= 0 or threshold <= 0 or y <= threshold:
            return y
        desired = round(y - threshold)
        try:
            scrolled = await self.surface.run_script(SCROLL_BY_SCRIPT, desired)
            applied = float(scrolled)
        except (SurfaceError, TypeError, ValueError) as e:
            self.logger.debug(f"Safe-margin scroll failed: {e}")
            return y
        return max(0, round(y - applied))

    def _direction(self, args: Dict[str, Any]) -> str:
        direction = str(args.get("direction") or "down").strip().lower()
        if direction not in SCROLL_DIRECTIONS:
            raise ActionFailed(f"Invalid scroll direction {direction!r}")
        return direction

    async def _wheel(self, x: int, y: int, direction: str, magnitude: float) -> None:
        # DOM convention: positive deltas scroll down/right.
        sign = -1 if direction in ("up", "left") else 1
        delta = sign * magnitude * self.surface.wheel_delta_sign
        dx, dy = (delta, 0.0) if direction in ("left", "right") else (0.0, delta)
        await self.surface.inject_pointer_event("move", x, y)
        await self.surface.inject_wheel_event(x, y, dx, dy)
        await self._sleep(self.config.post_action_delay)

    async def _press(self, combo: KeyCombination) -> None:
        for modifier in combo.modifiers:
            await self.surface.inject_key_event("down", modifier, combo.modifiers)
        await self.surface.inject_key_event("down", combo.key, combo.modifiers)
        await self.surface.inject_key_event("up", combo.key, combo.modifiers)
        for modifier in reversed(combo.modifiers):
            await self.surface.inject_key_event("up", modifier)

    async def _show_pointer(self, x: int, y: int, mode: str) -> None:
        if self.overlay is None or not self.run_id:
            return
        await self.overlay.send(OverlayEvent.pointer(self.run_id, x, y, mode))
        rect = None
        try:
            rect = await self.surface.run_script(ELEMENT_RECT_SCRIPT, [x, y])
        except SurfaceError as e:
            self.logger.debug(f"Highlight lookup failed: {e}")
        if isinstance(rect, dict) and rect.get("width") and rect.get("height"):
            await self.overlay.send(
                OverlayEvent.highlight(self.run_id, rect["x"], rect["y"], rect["width"], rect["height"])
            )
        else:
            await self.overlay.send(OverlayEvent.highlight_point(self.run_id, x, y))

    async def _sleep(self, seconds: float) -> bool:
        """Cancellable delay; True when the run was cancelled."""
        if self.token is not None:
            return await self.token.sleep(seconds)
        if seconds > 0:
            await asyncio.sleep(seconds)
        return False

    def _current_url(self) -> str:
        try:
            return self.surface.current_url()
        except Exception:
            return ""
