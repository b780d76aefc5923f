"""Conversation history types and structural invariants."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from exceptions import HistoryInvariantError

Role = Literal["user", "model"]

logger = logging.getLogger("pagepilot.history")


@dataclass
class TextPart:
    text: str


@dataclass
class ImagePart:
    data: bytes
    mime_type: str = "image/png"


@dataclass
class ToolInvocationPart:
    """A model-proposed action."""

    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultPart:
    """The executed outcome of one tool invocation."""

    call_id: str
    name: str
    response: Dict[str, Any] = field(default_factory=dict)
    image: Optional[ImagePart] = None


Part = Union[TextPart, ImagePart, ToolInvocationPart, ToolResultPart]


@dataclass
class Turn:
    role: Role
    parts: List[Part] = field(default_factory=list)

    @property
    def tool_invocations(self) -> List[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    @property
    def tool_results(self) -> List[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def has_tool_invocations(self) -> bool:
        return any(isinstance(p, ToolInvocationPart) for p in self.parts)

    @property
    def is_tool_result_turn(self) -> bool:
        return any(isinstance(p, ToolResultPart) for p in self.parts)


def prompt_turn(text: str, image: Optional[ImagePart] = None) -> Turn:
    parts: List[Part] = [TextPart(text)]
    if image is not None:
        parts.append(image)
    return Turn("user", parts)


def tool_result_turn(results: Sequence[ToolResultPart]) -> Turn:
    return Turn("user", list(results))


def _unanswered(invocations: Sequence[ToolInvocationPart], results: Sequence[ToolResultPart]) -> List[str]:
    answered_ids = {r.call_id for r in results if r.call_id}
    answered_names = [r.name for r in results]
    missing = []
    for inv in invocations:
        if inv.call_id and inv.call_id in answered_ids:
            continue
        if not inv.call_id and inv.name in answered_names:
            answered_names.remove(inv.name)
            continue
        missing.append(inv.call_id or inv.name)
    return missing


def validate_history(history: Sequence[Turn]) -> None:
    """Raise HistoryInvariantError on the first structural violation."""
    for idx, turn in enumerate(history):
        if not isinstance(turn, Turn):
            raise HistoryInvariantError(f"Invalid turn at index {idx}: not a Turn", idx)
        if turn.role not in ("user", "model"):
            raise HistoryInvariantError(f"Invalid turn at index {idx}: unknown role {turn.role!r}", idx)
        if not isinstance(turn.parts, list):
            raise HistoryInvariantError(f"Invalid turn at index {idx}: missing parts", idx)

        if turn.role == "user":
            has_text = any(isinstance(p, TextPart) and p.text for p in turn.parts)
            if has_text and turn.is_tool_result_turn:
                raise HistoryInvariantError(
                    f"Invalid user turn at index {idx}: contains both text and tool results", idx
                )
            if any(isinstance(p, ToolInvocationPart) for p in turn.parts):
                raise HistoryInvariantError(f"Invalid user turn at index {idx}: contains tool invocations", idx)
            if turn.is_tool_result_turn:
                previous = history[idx - 1] if idx > 0 else None
                if previous is None or previous.role != "model" or not previous.has_tool_invocations:
                    raise HistoryInvariantError(
                        f"Invalid user turn at index {idx}: tool results without preceding invocations", idx
                    )
        else:
            if turn.is_tool_result_turn:
                raise HistoryInvariantError(f"Invalid model turn at index {idx}: contains tool results", idx)
            if turn.has_tool_invocations:
                following = history[idx + 1] if idx + 1 < len(history) else None
                results = following.tool_results if following is not None and following.role == "user" else []
                missing = _unanswered(turn.tool_invocations, results)
                if missing:
                    raise HistoryInvariantError(
                        f"Unanswered tool invocations at index {idx}: {', '.join(missing)}", idx
                    )


def sanitize(history: Sequence[Turn]) -> List[Turn]:
    """Return the history unchanged if valid, else an empty history."""
    try:
        validate_history(history)
    except HistoryInvariantError as e:
        logger.error(f"Invalid conversation history; resetting. {e}")
        return []
    return list(history)


def prune_dangling_tool_calls(history: Sequence[Turn]) -> List[Turn]:
    """Drop trailing model turns holding tool invocations. Idempotent."""
    out = list(history)
    while out and out[-1].role == "model" and out[-1].has_tool_invocations:
        out.pop()
    return out
