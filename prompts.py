"""System prompts and tool schema for the pagepilot agent"""
from __future__ import annotations

from typing import Any, Optional

from instructions import InstructionStore

BASE_SYSTEM_PROMPT = """You are PagePilot, a browser agent with full control of one web page.
Every turn you receive an up-to-date screenshot of the page together with the user's request or the results of your previous actions.

How to work:
- Look at the screenshot before acting. Check whether your last action had the expected effect.
- Decide if the request is a task that needs the page or a plain conversation. Do not use tools for greetings or small talk.
- Take the single most useful next action. Every action must clearly serve the user's original request.
- If a tool result reports that the page changed since the last screenshot, look at the new screenshot before acting again.
- When the task is complete, or you are blocked, stop calling tools and answer the user concisely.

Coordinates:
- x and y are normalized to a 0-1000 grid over the screenshot (0,0 is the top-left corner).
- Aim at the center of the visible target.
- Never mention coordinates or selectors to the user; refer to visible landmarks such as "the search bar".

Safety:
- For destructive or sensitive actions (deleting data, payments, editing private profiles) stop and ask the user to confirm.
- If you meet a CAPTCHA, a two-factor prompt or a repeated failure loop, ask the user to take over.
"""


def _point_params(extra: Optional[dict[str, Any]] = None, required: Optional[list[str]] = None) -> dict[str, Any]:
    properties: dict[str, Any] = {
        "x": {"type": "number", "description": "Horizontal position on the 0-1000 grid"},
        "y": {"type": "number", "description": "Vertical position on the 0-1000 grid"},
    }
    properties.update(extra or {})
    return {
        "type": "object",
        "properties": properties,
        "required": ["x", "y", *(required or [])],
    }


def _tool(name: str, description: str, parameters: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": parameters or {"type": "object", "properties": {}},
        },
    }


_DIRECTION = {"type": "string", "enum": ["up", "down", "left", "right"]}

COMPUTER_USE_TOOLS: list[dict[str, Any]] = [
    _tool("open_web_browser", "Open the web browser. The browser is already open; this is a no-op."),
    _tool(
        "navigate",
        "Navigate the page to a URL.",
        {"type": "object", "properties": {"url": {"type": "string"}}, "required": ["url"]},
    ),
    _tool(
        "search",
        "Open the search engine, optionally with a query.",
        {"type": "object", "properties": {"query": {"type": "string"}}},
    ),
    _tool("go_back", "Go back to the previous page."),
    _tool("go_forward", "Go forward to the next page."),
    _tool("click_at", "Click at a point on the page.", _point_params()),
    _tool("hover_at", "Move the pointer to a point without clicking.", _point_params()),
    _tool(
        "type_text_at",
        "Focus the element at a point and type text into it.",
        _point_params(
            {
                "text": {"type": "string"},
                "press_enter": {"type": "boolean", "description": "Press Enter after typing"},
                "clear_before_typing": {"type": "boolean", "description": "Clear existing text first"},
            },
            ["text"],
        ),
    ),
    _tool(
        "scroll_document",
        "Scroll the whole page by most of a screen.",
        {"type": "object", "properties": {"direction": _DIRECTION}, "required": ["direction"]},
    ),
    _tool(
        "scroll_at",
        "Scroll the element under a point.",
        _point_params(
            {
                "direction": _DIRECTION,
                "magnitude": {"type": "number", "description": "Scroll distance in pixels (default 400)"},
            },
            ["direction"],
        ),
    ),
    _tool(
        "drag_and_drop",
        "Drag from one point and drop at another.",
        _point_params(
            {
                "destination_x": {"type": "number"},
                "destination_y": {"type": "number"},
            },
            ["destination_x", "destination_y"],
        ),
    ),
    _tool(
        "key_combination",
        "Press a key or a '+'-joined combination such as 'Control+A' or 'Enter'.",
        {"type": "object", "properties": {"keys": {"type": "string"}}, "required": ["keys"]},
    ),
    _tool(
        "wait",
        "Wait for the page to update.",
        {"type": "object", "properties": {"seconds": {"type": "number", "description": "At most 60"}}},
    ),
    _tool("wait_5_seconds", "Wait five seconds for the page to update."),
]

COMPUTER_USE_TOOL_NAMES = frozenset(t["function"]["name"] for t in COMPUTER_USE_TOOLS)


LEARNER_SYSTEM_PROMPT = """You are the self-improvement module of PagePilot, a browser agent.

You receive ONE completed run transcript: the user's request, the agent's messages, its actions and navigation notes.
Produce UPDATED navigation instructions that will improve future runs.

What to improve:
1) Intent capture: did the agent infer the user's goal and constraints? Which single clarifying question would have prevented errors? Which user preferences are stable?
2) User preferences: tone, interaction style, when to confirm before acting, formatting.
3) Navigation accuracy and efficiency: unnecessary or unverified steps, and UI pitfalls such as popups, modals, login walls and dynamic content.

Output format (STRICT):
- Output ONLY JSON matching the provided schema, without markdown and without extra keys.
- general: short imperative rules that apply across websites.
- perSite: entries of {"site": hostname, "rules": short imperative rules for that site}.

Update policy:
- Start from the CURRENT instructions given in the prompt and preserve them.
- Add new useful instructions.
- Only remove an existing instruction if a new one clearly contradicts it.

Content rules:
- Prefer incremental additions; do not restate the base prompt.
- Never mention pixel coordinates, DOM selectors or implementation details.
- If the run was incomplete or ambiguous, add at most ONE rule about asking a clarifying question.
"""

LEARNER_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "instruction_update",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "general": {"type": "array", "items": {"type": "string"}},
                "perSite": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "site": {"type": "string"},
                            "rules": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["site", "rules"],
                    },
                },
            },
            "required": ["general", "perSite"],
        },
    },
}


def compose_system_instruction(store: Optional[InstructionStore], url: Optional[str] = None) -> str:
    """Base prompt plus the learned sections relevant to ``url``."""
    learned = store.render(url).strip() if store is not None else ""
    base = BASE_SYSTEM_PROMPT.strip()
    return f"{base}\n\n{learned}" if learned else base
