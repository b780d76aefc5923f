"""Unit tests for executor module."""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeSurface, make_png
from config import ExecutorConfig, StabilityConfig
from executor import (
    Action,
    ActionExecutor,
    ActionFailed,
    ActionResult,
    extract_url,
    normalize_url,
    parse_key_combination,
)
from frames import FrameStabilizer, decode_capture
from overlay import RecordingOverlay
from run_types import CancellationToken
from surfaces.base import ViewportMetrics


def make_executor(surface: FakeSurface, platform: str = "linux", **config) -> ActionExecutor:
    values = {"post_action_delay": 0.0, "dom_idle_settle": 0.0, "dom_ready_timeout": 0.1}
    values.update(config)
    return ActionExecutor(
        surface,
        config=ExecutorConfig(**values),
        stabilizer=FrameStabilizer(StabilityConfig(capture_backoff=0.0)),
        platform=platform,
    )


def run(executor: ActionExecutor, name: str, **args) -> ActionResult:
    return asyncio.run(executor.execute(Action(name, args)))


def key_events(surface: FakeSurface) -> list:
    return [(e[1], e[2]) for e in surface.of_kind("key")]


class TestParseKeyCombination:
    def test_modifiers_ordered_and_mapped(self):
        combo = parse_key_combination("shift+ctrl+t")
        assert combo.key == "t"
        assert combo.modifiers == ("Control", "Shift")

    def test_named_keys(self):
        assert parse_key_combination("enter").key == "Enter"
        assert parse_key_combination("ESC").key == "Escape"
        assert parse_key_combination("up").key == "ArrowUp"
        assert parse_key_combination("space").key == "Space"

    def test_function_keys(self):
        assert parse_key_combination("f5").key == "F5"
        assert parse_key_combination("F12").key == "F12"

    def test_single_character_lowercased(self):
        assert parse_key_combination("cmd+A") == parse_key_combination("meta+a")

    def test_empty_rejected(self):
        with pytest.raises(ActionFailed, match="Missing keys"):
            parse_key_combination("")
        with pytest.raises(ActionFailed):
            parse_key_combination(" + ")


class TestUrlHelpers:
    def test_normalize_url(self):
        assert normalize_url("example.org") == "https://example.org"
        assert normalize_url("http://example.org") == "http://example.org"
        assert normalize_url("about:blank") == "about:blank"

    def test_extract_url(self):
        assert extract_url(" example.org ") == "example.org"
        assert extract_url({"url": "a.com"}) == "a.com"
        assert extract_url({"value": "b.com"}) == "b.com"
        assert extract_url(None) == ""
        assert extract_url({"href": "c.com"}) == ""


class TestNavigationActions:
    def test_navigate_prefixes_scheme(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "navigate", url="example.org/docs")
        assert result.ok
        assert surface.of_kind("navigate") == [("navigate", "https://example.org/docs")]
        assert result.surface_url == "https://example.org/docs"

    def test_navigate_accepts_url_object(self):
        surface = FakeSurface()
        run(make_executor(surface), "navigate", url={"value": "example.org"})
        assert surface.url == "https://example.org"

    def test_navigate_without_url_fails(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "navigate")
        assert result.ok is False
        assert result.error == "Missing url"
        assert surface.events == []

    def test_search_with_query(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "search", query="opening hours")
        assert result.ok
        assert surface.url == "https://www.google.com/search?q=opening+hours"

    def test_search_without_query_opens_home(self):
        surface = FakeSurface()
        run(make_executor(surface), "search")
        assert surface.url == "https://www.google.com"

    def test_history_navigation(self):
        surface = FakeSurface()
        executor = make_executor(surface)
        run(executor, "go_back")
        run(executor, "go_forward")
        assert surface.events == [("back",), ("forward",)]

    def test_open_web_browser_is_noop(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "open_web_browser")
        assert result.ok
        assert surface.events == []

    def test_unsupported_action(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "fly_to_moon")
        assert result.ok is False
        assert result.error == "unsupported action fly_to_moon"

    def test_surface_exception_becomes_failed_result(self):
        surface = FakeSurface()

        async def boom(url):
            raise RuntimeError("boom")

        surface.navigate = boom
        result = run(make_executor(surface), "navigate", url="example.org")
        assert result.ok is False
        assert result.error == "Action failed: boom"


class TestPointerActions:
    def test_click_maps_grid_to_viewport(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "click_at", x=500, y=500)
        assert result.ok
        assert surface.of_kind("pointer") == [
            ("pointer", "move", 720, 450, 1),
            ("pointer", "down", 720, 450, 1),
            ("pointer", "up", 720, 450, 1),
        ]

    def test_click_near_bottom_scrolls_into_safe_band(self):
        surface = FakeSurface()
        surface.scroll_result = 115
        result = run(make_executor(surface), "click_at", x=500, y=950)
        assert result.ok
        assert surface.of_kind("scroll_by") == [("scroll_by", 115)]
        assert result.response["y"] == 740

    def test_click_near_bottom_when_page_cannot_scroll(self):
        surface = FakeSurface()
        surface.scroll_result = 0
        result = run(make_executor(surface), "click_at", x=500, y=950)
        assert result.response["y"] == 855

    def test_click_without_coordinates_fails(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "click_at", x=10)
        assert result.ok is False
        assert "coordinates" in result.error

    def test_hover_moves_only(self):
        surface = FakeSurface()
        run(make_executor(surface), "hover_at", x=0.25, y=0.5)
        assert surface.of_kind("pointer") == [("pointer", "move", 360, 450, 1)]

    def test_drag_and_drop(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "drag_and_drop", x=100, y=100, destination_x=900, destination_y=500)
        assert result.ok
        assert [e[1:4] for e in surface.of_kind("pointer")] == [
            ("move", 144, 90),
            ("down", 144, 90),
            ("move", 1296, 450),
            ("up", 1296, 450),
        ]

    def test_waits_for_dom_readiness_then_acts(self):
        surface = FakeSurface()
        surface.ready_state = "loading"
        result = run(make_executor(surface, dom_ready_timeout=0.1), "click_at", x=500, y=500)
        assert result.ok
        assert len(surface.of_kind("pointer")) == 3


class TestTyping:
    def test_type_with_clear_and_enter(self):
        surface = FakeSurface()
        result = run(
            make_executor(surface),
            "type_text_at",
            x=500,
            y=200,
            text="hello",
            clear_before_typing=True,
            press_enter=True,
        )
        assert result.ok
        assert result.response["typed_chars"] == 5
        pointer = surface.of_kind("pointer")
        assert [e[1] for e in pointer] == ["move", "down", "up"]
        assert all(e[4] == 2 for e in pointer[1:])
        assert key_events(surface) == [
            ("down", "Control"),
            ("down", "a"),
            ("up", "a"),
            ("up", "Control"),
            ("down", "Backspace"),
            ("up", "Backspace"),
            ("down", "Enter"),
            ("up", "Enter"),
        ]
        assert surface.of_kind("insert") == [("insert", "hello")]
        kinds = [e[0] for e in surface.events]
        assert kinds.index("insert") < len(kinds) - 2

    def test_select_all_uses_meta_on_macos(self):
        surface = FakeSurface()
        run(make_executor(surface, platform="darwin"), "type_text_at", x=500, y=200, text="", clear_before_typing=True)
        assert key_events(surface)[0] == ("down", "Meta")

    def test_key_typing_mode(self):
        surface = FakeSurface()
        run(make_executor(surface, typing_mode="keys"), "type_text_at", x=500, y=200, text="hi")
        assert key_events(surface) == [("char", "h"), ("char", "i")]
        assert surface.of_kind("insert") == []


class TestScrolling:
    def test_scroll_document_down(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "scroll_document", direction="down")
        assert result.ok
        assert surface.of_kind("wheel") == [("wheel", 720, 450, 0.0, 675)]
        assert surface.of_kind("pointer")[0][1:4] == ("move", 720, 450)

    def test_scroll_document_up_is_negative(self):
        surface = FakeSurface()
        run(make_executor(surface), "scroll_document", direction="up")
        assert surface.of_kind("wheel")[0][4] == -675

    def test_inverted_wheel_surface(self):
        surface = FakeSurface()
        surface.wheel_delta_sign = -1
        run(make_executor(surface), "scroll_document", direction="down")
        assert surface.of_kind("wheel")[0][4] == -675

    def test_scroll_at_horizontal_with_magnitude(self):
        surface = FakeSurface()
        run(make_executor(surface), "scroll_at", x=500, y=500, direction="left", magnitude=200)
        assert surface.of_kind("wheel") == [("wheel", 720, 450, -200.0, 0.0)]

    def test_invalid_direction(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "scroll_document", direction="sideways")
        assert result.ok is False
        assert surface.of_kind("wheel") == []


class TestKeysAndWait:
    def test_key_combination(self):
        surface = FakeSurface()
        result = run(make_executor(surface), "key_combination", keys="ctrl+shift+t")
        assert result.ok
        assert key_events(surface) == [
            ("down", "Control"),
            ("down", "Shift"),
            ("down", "t"),
            ("up", "t"),
            ("up", "Shift"),
            ("up", "Control"),
        ]

    def test_key_combination_missing_keys(self):
        result = run(make_executor(FakeSurface()), "key_combination")
        assert result.ok is False
        assert result.error == "Missing keys"

    def test_wait_is_capped(self):
        result = run(make_executor(FakeSurface(), max_wait_seconds=0.0), "wait", seconds=30)
        assert result.response["waited_seconds"] == 0.0

    def test_wait_observes_cancellation(self):
        executor = make_executor(FakeSurface())
        token = CancellationToken()
        token.cancel()
        executor.bind_run("run-1", token)
        result = run(executor, "wait_5_seconds")
        assert result.response == {"waited_seconds": 5.0, "cancelled": True}


class TestDriftCheck:
    def reference(self):
        stabilizer = FrameStabilizer(StabilityConfig())
        return stabilizer.build_frame(decode_capture(make_png()), ViewportMetrics(1440, 900))

    def test_stale_frame_aborts_pointer_action(self):
        surface = FakeSurface(screenshots=[make_png(color=(0, 0, 0))])
        executor = make_executor(surface)
        executor.set_reference_frame(self.reference())
        result = run(executor, "click_at", x=500, y=500)
        assert result.ok is False
        assert result.error.startswith("page changed since the last screenshot")
        assert surface.of_kind("pointer") == []

    def test_unchanged_page_passes(self):
        surface = FakeSurface()
        executor = make_executor(surface)
        executor.set_reference_frame(self.reference())
        assert run(executor, "click_at", x=500, y=500).ok

    def test_reference_consumed_after_mutating_action(self):
        surface = FakeSurface()
        executor = make_executor(surface)
        executor.set_reference_frame(self.reference())
        assert run(executor, "click_at", x=500, y=500).ok
        surface.screenshots = [make_png(color=(0, 0, 0))]
        assert run(executor, "click_at", x=100, y=100).ok
        assert surface.screenshot_calls == 1

    def test_hover_keeps_reference(self):
        surface = FakeSurface()
        executor = make_executor(surface)
        executor.set_reference_frame(self.reference())
        run(executor, "hover_at", x=500, y=500)
        surface.screenshots = [make_png(color=(0, 0, 0))]
        assert run(executor, "click_at", x=500, y=500).ok is False


class TestOverlayEvents:
    def test_pointer_and_element_highlight(self):
        surface = FakeSurface()
        surface.element_rect = {"x": 10, "y": 20, "width": 100, "height": 30}
        overlay = RecordingOverlay()
        executor = make_executor(surface)
        executor.overlay = overlay
        executor.bind_run("run-1", None)
        run(executor, "click_at", x=500, y=500)
        assert overlay.types() == ["pointer", "highlight"]
        assert overlay.events[1].to_dict()["rect"] == {"x": 10, "y": 20, "w": 100, "h": 30}

    def test_point_highlight_without_element(self):
        surface = FakeSurface()
        overlay = RecordingOverlay()
        executor = make_executor(surface)
        executor.overlay = overlay
        executor.bind_run("run-1", None)
        run(executor, "type_text_at", x=500, y=500, text="x")
        assert overlay.types() == ["pointer", "highlight-point"]
        assert overlay.events[0].payload["mode"] == "text"

    def test_no_events_without_bound_run(self):
        overlay = RecordingOverlay()
        executor = make_executor(FakeSurface())
        executor.overlay = overlay
        run(executor, "click_at", x=500, y=500)
        assert overlay.events == []


class TestActionResult:
    def test_to_response(self):
        result = ActionResult("navigate", False, {"navigated_to": "x"}, "Missing url", "https://a.com/")
        assert result.to_response() == {
            "navigated_to": "x",
            "ok": False,
            "url": "https://a.com/",
            "error": "Missing url",
        }
