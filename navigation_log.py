"""Incremental parser turning the raw navigation stream into readable lines."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

PREFIX_RE = re.compile(r"^Computer Use\s*:\s*", re.IGNORECASE)
STEP_RE = re.compile(r"\bstep\s+(\d+)\s*/\s*(\d+)\b", re.IGNORECASE)
DONE_RE = re.compile(r"\bdone\b", re.IGNORECASE)
NO_MORE_ACTIONS_RE = re.compile(r"no more actions", re.IGNORECASE)
LINE_SPLIT_RE = re.compile(r"\r?\n")

NAVIGATION_PREFIX = "Computer Use: "
COMPLETE_LABEL = "Navigation complete"


@dataclass(frozen=True)
class NavigationStep:
    current: int
    total: int


@dataclass
class NavigationDelta:
    """Result of parsing one chunk: carry ``next_buffer`` into the next call."""

    next_buffer: str
    pretty_lines: List[str] = field(default_factory=list)
    steps: List[NavigationStep] = field(default_factory=list)
    saw_done: bool = False
    # Step counters, action labels and completion in stream order.
    display_lines: List[str] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Raw line producers (used by the controller)
# ─────────────────────────────────────────────────────────────────────────────


def step_line(current: int, total: int) -> str:
    return f"{NAVIGATION_PREFIX}step {current}/{total}...\n"


def action_line(name: str, args: dict[str, Any]) -> str:
    return f"{NAVIGATION_PREFIX}action {name} {json.dumps(args, ensure_ascii=False, default=str)}\n"


def done_line() -> str:
    return f"{NAVIGATION_PREFIX}done (no more actions).\n"


def max_steps_line() -> str:
    return f"{NAVIGATION_PREFIX}stopped (max steps reached).\n"


# ─────────────────────────────────────────────────────────────────────────────
# Classification rules
# ─────────────────────────────────────────────────────────────────────────────


def _split_action_line(cleaned: str) -> Tuple[str, Optional[dict[str, Any]]]:
    json_start = cleaned.find("{")
    if json_start < 0:
        return cleaned.strip().lower(), None
    action_part = cleaned[:json_start].strip().lower()
    try:
        parsed = json.loads(cleaned[json_start:].strip())
    except ValueError:
        parsed = None
    return action_part, parsed if isinstance(parsed, dict) else None


def _url_from_args(args: Optional[dict[str, Any]]) -> str:
    if not args:
        return ""
    for key in ("url", "href", "destination"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if key == "url" and isinstance(value, dict):
            nested = value.get("url") or value.get("value")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return ""


def _typing_label(action: str, args: Optional[dict[str, Any]]) -> str:
    text = args.get("text") if args else None
    text = text if isinstance(text, str) else ""
    enter = bool(args and (args.get("press_enter") is True or args.get("enter") is True))
    quoted = f" “{text}”" if text else ""
    return f"Submitting{quoted}" if enter else f"Typing{quoted}"


def _opening_label(action: str, args: Optional[dict[str, Any]]) -> str:
    url = _url_from_args(args)
    return f"Opening page “{url}”" if url else "Opening page"


def _contains(*needles: str) -> Callable[[str], bool]:
    return lambda action: any(n in action for n in needles)


def _fixed(label: str) -> Callable[[str, Optional[dict[str, Any]]], str]:
    return lambda action, args: label


Rule = Tuple[Callable[[str], bool], Callable[[str, Optional[dict[str, Any]]], str]]

# Ordered: the first matching predicate wins.
RULES: List[Rule] = [
    (_contains("type_text"), _typing_label),
    (_contains("search"), _fixed("Searching")),
    (_contains("click"), _fixed("Clicking element")),
    (_contains("hover"), _fixed("Hovering")),
    (_contains("drag"), _fixed("Dragging")),
    (_contains("scroll"), _fixed("Scrolling")),
    (_contains("navigate", "open_page", "open_url", "openurl"), _opening_label),
    (_contains("go_back"), _fixed("Going back")),
    (_contains("go_forward"), _fixed("Going forward")),
    (_contains("open_web_browser"), _fixed("Opening browser")),
    (_contains("wait"), _fixed("Waiting")),
    (_contains("key", "keypress"), _fixed("Pressing keys")),
    (_contains("max steps"), _fixed("Stopped at the step limit")),
]

FALLBACK_LABEL = "Continuing"


def pretty_from_line(cleaned: str) -> str:
    """Human-readable summary of one action line; never echoes coordinates."""
    action, args = _split_action_line(cleaned)
    for predicate, label in RULES:
        if predicate(action):
            return label(action, args)
    return FALLBACK_LABEL


def parse_delta(raw_delta: str, buffer: str = "") -> NavigationDelta:
    """Parse complete lines of ``buffer + raw_delta``; the trailing partial line is carried."""
    combined = (buffer or "") + (raw_delta or "")
    parts = LINE_SPLIT_RE.split(combined)
    result = NavigationDelta(next_buffer=parts[-1])

    for raw_line in parts[:-1]:
        line = raw_line.strip()
        if not line:
            continue
        cleaned = PREFIX_RE.sub("", line).strip()

        match = STEP_RE.search(cleaned)
        if match:
            step = NavigationStep(int(match.group(1)), int(match.group(2)))
            result.steps.append(step)
            result.display_lines.append(f"Step {step.current}/{step.total}")
            continue

        if DONE_RE.search(cleaned) and NO_MORE_ACTIONS_RE.search(cleaned):
            result.saw_done = True
            result.display_lines.append(COMPLETE_LABEL)
            continue

        pretty = pretty_from_line(cleaned)
        result.pretty_lines.append(pretty)
        result.display_lines.append(pretty)

    return result


class NavigationLogFormatter:
    """Keeps the carry-over buffer for one streaming consumer."""

    def __init__(self) -> None:
        self.buffer = ""
        self.last_step: Optional[NavigationStep] = None
        self.done = False

    def feed(self, raw_delta: str) -> List[str]:
        """Feed a chunk; returns display lines (step counters included)."""
        delta = parse_delta(raw_delta, self.buffer)
        self.buffer = delta.next_buffer
        if delta.steps:
            self.last_step = delta.steps[-1]
        if delta.saw_done:
            self.done = True
        return list(delta.display_lines)

    def flush(self) -> List[str]:
        """Terminate a trailing partial line and return what it produces."""
        if not self.buffer:
            return []
        return self.feed("\n")

    def reset(self) -> None:
        self.buffer = ""
        self.last_step = None
        self.done = False
