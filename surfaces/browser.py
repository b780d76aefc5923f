"""Playwright-backed controlled surface."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional, Sequence

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
    TimeoutError as PlaywrightTimeout,
)
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from exceptions import (
    NavigationError,
    ScreenshotError,
    ScriptExecutionError,
    SurfaceNotStartedError,
)
from surfaces.base import ControlledSurface, KeyKind, PointerKind

BrowserType = Literal["chromium", "firefox", "webkit"]

OVERLAY_ATTRIBUTE = "data-pagepilot-overlay"

# Transient failures while a page is navigating or being torn down.
_RETRYABLE_SCRIPT_ERRORS = (
    "execution context was destroyed",
    "frame was detached",
    "cannot find context with specified id",
    "target closed",
    "most likely because of a navigation",
)


def _is_retryable_script_error(exc: BaseException) -> bool:
    return isinstance(exc, ScriptExecutionError) and exc.retryable


class BrowserSurface(ControlledSurface):
    """One Playwright page exposed through the surface capability set."""

    wheel_delta_sign = 1

    def __init__(
        self,
        browser_type: BrowserType = "chromium",
        headless: bool = True,
        viewport_width: int = 1440,
        viewport_height: int = 900,
        device_scale_factor: float = 1.0,
        slow_mo: int = 0,
        navigation_timeout_ms: float = 30000,
        hide_overlay_in_screenshots: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.browser_type = browser_type
        self.headless = headless
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.device_scale_factor = device_scale_factor
        self.slow_mo = slow_mo
        self.navigation_timeout_ms = navigation_timeout_ms
        self.hide_overlay_in_screenshots = hide_overlay_in_screenshots
        self.logger = logger or logging.getLogger("pagepilot.surface")

        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    def _ensure_started(self) -> None:
        """Raise if browser not started."""
        if self.page is None:
            raise SurfaceNotStartedError()

    async def start(self, start_url: Optional[str] = None) -> None:
        """Start the browser with the configured engine."""
        self._playwright = await async_playwright().start()

        browser_launcher = getattr(self._playwright, self.browser_type)
        launch_options: dict[str, Any] = {"headless": self.headless}
        if self.slow_mo > 0:
            launch_options["slow_mo"] = self.slow_mo

        self.browser = await browser_launcher.launch(**launch_options)
        self.context = await self.browser.new_context(
            viewport={"width": self.viewport_width, "height": self.viewport_height},
            device_scale_factor=self.device_scale_factor,
        )
        self.page = await self.context.new_page()
        self.logger.info(f"Browser started: {self.browser_type} (headless={self.headless})")

        if start_url:
            await self.navigate(start_url)

    async def close(self) -> None:
        """Close the browser and clean up resources."""
        if self.page:
            await self.page.close()
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self._playwright:
            await self._playwright.stop()
        self.page = None
        self.logger.info("Browser closed")

    # ─────────────────────────────────────────────────────────────────────────
    # Observation
    # ─────────────────────────────────────────────────────────────────────────

    async def screenshot(self) -> bytes:
        """Take a viewport screenshot, hiding overlay elements."""
        self._ensure_started()
        hidden = False
        try:
            if self.hide_overlay_in_screenshots:
                hidden = await self._toggle_overlay(False)
            return await self.page.screenshot(type="png")
        except Exception as e:
            raise ScreenshotError(f"Screenshot failed: {e}") from e
        finally:
            if hidden:
                await self._toggle_overlay(True)

    async def _toggle_overlay(self, visible: bool) -> bool:
        """Show or hide overlay nodes; returns True if any were toggled."""
        try:
            return bool(
                await self.page.evaluate(
                    """([attr, visible]) => {
                        const nodes = document.querySelectorAll(`[${attr}]`);
                        nodes.forEach((el) => { el.style.visibility = visible ? '' : 'hidden'; });
                        return nodes.length > 0;
                    }""",
                    [OVERLAY_ATTRIBUTE, visible],
                )
            )
        except Exception:
            return False

    @retry(
        retry=retry_if_exception(_is_retryable_script_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.075, min=0.075, max=0.3),
        reraise=True,
    )
    async def run_script(self, code: str, arg: Optional[Any] = None) -> Any:
        """Evaluate a function expression, retrying while the context is being replaced."""
        self._ensure_started()
        try:
            if arg is None:
                return await self.page.evaluate(code)
            return await self.page.evaluate(code, arg)
        except Exception as e:
            msg = str(e).lower()
            retryable = any(marker in msg for marker in _RETRYABLE_SCRIPT_ERRORS)
            raise ScriptExecutionError(f"Script failed: {e}", retryable=retryable) from e

    async def document_ready_state(self) -> str:
        state = await self.run_script("() => document.readyState")
        return str(state or "")

    async def is_loading(self) -> bool:
        return (await self.document_ready_state()) == "loading"

    def current_url(self) -> str:
        """Get current URL."""
        self._ensure_started()
        return self.page.url

    # ─────────────────────────────────────────────────────────────────────────
    # Input synthesis
    # ─────────────────────────────────────────────────────────────────────────

    async def inject_pointer_event(
        self,
        kind: PointerKind,
        x: float,
        y: float,
        button: str = "left",
        click_count: int = 1,
    ) -> None:
        self._ensure_started()
        mouse = self.page.mouse
        if kind == "move":
            await mouse.move(x, y)
        elif kind == "down":
            await mouse.move(x, y)
            await mouse.down(button=button, click_count=click_count)
        elif kind == "up":
            await mouse.up(button=button, click_count=click_count)
        else:
            raise ValueError(f"Unknown pointer event kind: {kind}")

    async def inject_wheel_event(self, x: float, y: float, delta_x: float, delta_y: float) -> None:
        self._ensure_started()
        await self.page.mouse.move(x, y)
        await self.page.mouse.wheel(delta_x, delta_y)

    async def inject_key_event(
        self,
        kind: KeyKind,
        key: str,
        modifiers: Sequence[str] = (),
    ) -> None:
        """Send one key event.

        Playwright tracks held modifiers itself, so ``modifiers`` is only
        informational here: callers press modifier keys as separate events.
        """
        self._ensure_started()
        keyboard = self.page.keyboard
        if kind == "down":
            await keyboard.down(key)
        elif kind == "up":
            await keyboard.up(key)
        elif kind == "char":
            await keyboard.type(key)
        else:
            raise ValueError(f"Unknown key event kind: {kind}")

    async def insert_text(self, text: str) -> None:
        self._ensure_started()
        await self.page.keyboard.insert_text(text)

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    async def navigate(self, url: str) -> None:
        """Navigate to a URL, waiting for the DOM to be parsed."""
        self._ensure_started()
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeout as e:
            raise NavigationError(
                f"Navigation timed out: {url}", url=url, timeout=self.navigation_timeout_ms
            ) from e
        except Exception as e:
            raise NavigationError(f"Navigation failed: {e}", url=url) from e

    async def go_back(self) -> None:
        self._ensure_started()
        await self.page.go_back()

    async def go_forward(self) -> None:
        self._ensure_started()
        await self.page.go_forward()
