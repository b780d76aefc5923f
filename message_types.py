"""Conversion of conversation history into OpenAI chat messages."""
from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional, Sequence

from history import ImagePart, TextPart, ToolResultPart, Turn

OMITTED_IMAGE_TEXT = "[earlier screenshot omitted]"
FRAME_CAPTION = "Current screenshot of the page after the actions above."


def image_to_data_url(image: ImagePart) -> str:
    encoded = base64.b64encode(image.data).decode("ascii")
    return f"data:{image.mime_type};base64,{encoded}"


def _turn_images(turn: Turn) -> List[ImagePart]:
    """Images a turn contributes to the request, in emission order."""
    if turn.role != "user":
        return []
    if turn.is_tool_result_turn:
        images = [r.image for r in turn.tool_results if r.image is not None]
        return images[-1:]
    return [p for p in turn.parts if isinstance(p, ImagePart)]


def _image_content(image: ImagePart, keep: bool) -> Dict[str, Any]:
    if not keep:
        return {"type": "text", "text": OMITTED_IMAGE_TEXT}
    return {"type": "image_url", "image_url": {"url": image_to_data_url(image)}}


def history_to_openai(
    history: Sequence[Turn],
    system_instruction: Optional[str] = None,
    max_images: int = 3,
) -> List[Dict[str, Any]]:
    """Render turns as chat messages, keeping only the newest ``max_images`` screenshots."""
    total_images = sum(len(_turn_images(t)) for t in history)
    first_kept = max(0, total_images - max(0, max_images))
    image_index = 0

    messages: List[Dict[str, Any]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    for turn in history:
        if turn.role == "model":
            message: Dict[str, Any] = {"role": "assistant", "content": turn.text or None}
            calls = [
                {
                    "id": inv.call_id,
                    "type": "function",
                    "function": {"name": inv.name, "arguments": json.dumps(inv.arguments)},
                }
                for inv in turn.tool_invocations
            ]
            if calls:
                message["tool_calls"] = calls
            elif message["content"] is None:
                message["content"] = ""
            messages.append(message)
            continue

        if turn.is_tool_result_turn:
            for result in turn.tool_results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "content": json.dumps(result.response, default=str),
                    }
                )
            for image in _turn_images(turn):
                keep = image_index >= first_kept
                image_index += 1
                messages.append(
                    {
                        "role": "user",
                        "content": [{"type": "text", "text": FRAME_CAPTION}, _image_content(image, keep)],
                    }
                )
            continue

        content: List[Dict[str, Any]] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                keep = image_index >= first_kept
                image_index += 1
                content.append(_image_content(part, keep))
        messages.append({"role": "user", "content": content})

    return messages


def truncate_images(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Copy of ``messages`` with base64 image URLs replaced, for request logs."""
    out = []
    for m in messages:
        content = m.get("content")
        if isinstance(content, list):
            new_items = []
            for item in content:
                if isinstance(item, dict) and item.get("type") == "image_url":
                    new_items.append({"type": "image_url", "image_url": {"url": "<image_base64_truncated>"}})
                else:
                    new_items.append(item)
            m = {**m, "content": new_items}
        out.append(m)
    return out


def tool_results_summary(results: Sequence[ToolResultPart]) -> str:
    return ", ".join(f"{r.name}:{'ok' if r.response.get('ok', True) else 'failed'}" for r in results)
