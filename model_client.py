"""Streaming model decision call over an OpenAI-compatible endpoint."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import AgentConfig
from exceptions import ModelConnectionError, ModelError, ModelResponseError, ModelTimeoutError
from history import Turn
from message_types import history_to_openai, truncate_images
from prompts import COMPUTER_USE_TOOLS


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCall:
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Done:
    finish_reason: Optional[str] = None


@dataclass
class StreamError:
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


ModelEvent = Union[ReasoningDelta, TextDelta, ToolCall, Done, StreamError]


def _wrap_error(error: Exception, base_url: str, timeout: float) -> ModelError:
    if isinstance(error, ModelError):
        return error
    if isinstance(error, APITimeoutError):
        return ModelTimeoutError(timeout)
    if isinstance(error, APIConnectionError):
        return ModelConnectionError(f"Unable to reach model service: {error}", base_url=base_url)
    return ModelError(f"Model call failed: {error}")


class ModelClient:
    """Streams one step decision as a sequence of tagged events."""

    def __init__(
        self,
        config: AgentConfig,
        client: Optional[AsyncOpenAI] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.tools = tools if tools is not None else COMPUTER_USE_TOOLS
        self.logger = logger or logging.getLogger("pagepilot.model")
        self.client = client or AsyncOpenAI(
            api_key=config.api_key or "not-set",
            base_url=config.base_url,
            timeout=config.model_timeout_seconds,
        )

    @retry(
        retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2.0, min=2.0, max=10),
        reraise=True,
    )
    async def _open_stream(self, messages: List[Dict[str, Any]]) -> Any:
        """Open the completion stream, retrying transient failures."""
        return await self.client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            tools=self.tools,
            tool_choice="auto",
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            stream=True,
        )

    async def stream_decision(
        self,
        history: Sequence[Turn],
        system_instruction: str,
        run_id: Optional[str] = None,
    ) -> AsyncIterator[ModelEvent]:
        """Yield reasoning/text deltas, then assembled tool calls, then Done.

        Failures are yielded as a single StreamError instead of raised.
        """
        messages = history_to_openai(history, system_instruction, self.config.max_n_images)
        if self.config.debug_log_requests:
            self._log_request(messages, run_id)

        try:
            stream = await self._open_stream(messages)
        except Exception as e:
            yield StreamError(_wrap_error(e, self.config.base_url, self.config.model_timeout_seconds))
            return

        pending: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None
        try:
            async for chunk in stream:
                if not getattr(chunk, "choices", None):
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                if isinstance(reasoning, str) and reasoning:
                    yield ReasoningDelta(reasoning)
                if delta.content:
                    yield TextDelta(delta.content)

                for tc in delta.tool_calls or []:
                    slot = pending.setdefault(tc.index, {"id": None, "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    fn = tc.function
                    if fn is not None:
                        if fn.name and not slot["name"]:
                            slot["name"] = fn.name
                        if fn.arguments:
                            slot["arguments"] += fn.arguments
        except Exception as e:
            yield StreamError(_wrap_error(e, self.config.base_url, self.config.model_timeout_seconds))
            return

        calls: List[ToolCall] = []
        for index in sorted(pending):
            slot = pending[index]
            raw_args = slot["arguments"].strip() or "{}"
            try:
                arguments = json.loads(raw_args)
            except ValueError:
                yield StreamError(ModelResponseError(f"Malformed arguments for tool {slot['name']}", raw_args))
                return
            if not isinstance(arguments, dict) or not slot["name"]:
                yield StreamError(ModelResponseError("Malformed tool call in model stream", raw_args))
                return
            calls.append(ToolCall(call_id=slot["id"] or f"call_{index}", name=slot["name"], arguments=arguments))

        for call in calls:
            yield call
        yield Done(finish_reason)

    def _log_request(self, messages: List[Dict[str, Any]], run_id: Optional[str]) -> None:
        """Dump the request payload with images truncated."""
        ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        log_dir = Path(self.config.requests_log_folder) / (run_id or "unknown-run")
        payload = {
            "messages": truncate_images(messages),
            "create_kwargs": {
                "model": self.config.model,
                "temperature": self.config.temperature,
                "max_tokens": self.config.max_tokens,
                "tools": [t["function"]["name"] for t in self.tools],
            },
        }
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            (log_dir / f"request-{ts}.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            self.logger.warning(f"Failed to log request payload: {exc}")
