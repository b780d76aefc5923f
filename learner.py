"""Post-run self-improvement: distill a run into instruction updates."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import AgentConfig, LearnerConfig
from exceptions import LearnerError
from history import ImagePart, TextPart, ToolInvocationPart, ToolResultPart, Turn
from instructions import InstructionSet, InstructionStore
from prompts import LEARNER_RESPONSE_FORMAT, LEARNER_SYSTEM_PROMPT
from run_types import ExecutedAction, Run


class SiteRules(BaseModel):
    site: str
    rules: List[str] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def keep_strings(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, str)]


class InstructionUpdate(BaseModel):
    """Validated learner output."""

    model_config = ConfigDict(populate_by_name=True)

    general: List[str] = Field(default_factory=list)
    per_site: List[SiteRules] = Field(default_factory=list, alias="perSite")

    @field_validator("general", mode="before")
    @classmethod
    def keep_strings(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, str)]

    @field_validator("per_site", mode="before")
    @classmethod
    def accept_mapping(cls, v: Any) -> List[Any]:
        """Accept both the array form and a {site: [rules]} mapping."""
        if isinstance(v, dict):
            return [{"site": k, "rules": rules} for k, rules in v.items() if isinstance(k, str) and k.strip()]
        if not isinstance(v, list):
            return []
        return v

    def to_instruction_set(self) -> InstructionSet:
        per_site: dict[str, List[str]] = {}
        for entry in self.per_site:
            key = entry.site.strip()
            if key:
                per_site.setdefault(key, []).extend(entry.rules)
        return InstructionSet(general=list(self.general), per_site=per_site)


@dataclass
class RunTranscript:
    """Everything the learner sees about one finished run. Never images."""

    prompt: str
    history: List[Turn] = field(default_factory=list)
    navigation_transcript: str = ""
    actions: List[ExecutedAction] = field(default_factory=list)
    final_text: str = ""
    url: str = ""
    status: str = ""

    @classmethod
    def from_run(cls, run: Run, history: List[Turn], url: str = "") -> "RunTranscript":
        return cls(
            prompt=run.prompt,
            history=list(history),
            navigation_transcript=run.navigation_transcript,
            actions=list(run.actions),
            final_text=run.assistant_text,
            url=url,
            status=run.status.value if run.status else "",
        )


def _clip(text: str, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else "…" + text[-limit:]


def summarize_history(history: List[Turn], max_turns: int, max_chars: int) -> str:
    """Text rendering of the last ``max_turns`` turns with images dropped."""
    lines: List[str] = []
    for turn in history[-max_turns:]:
        for part in turn.parts:
            if isinstance(part, TextPart) and part.text.strip():
                lines.append(f"{turn.role}: {part.text.strip()}")
            elif isinstance(part, ToolInvocationPart):
                lines.append(f"{turn.role} tool call: {part.name} {json.dumps(part.arguments, ensure_ascii=False)}")
            elif isinstance(part, ToolResultPart):
                lines.append(f"tool result: {part.name} {json.dumps(part.response, ensure_ascii=False, default=str)}")
            elif isinstance(part, ImagePart):
                continue
    return _clip("\n".join(lines), max_chars)


def build_learner_prompt(transcript: RunTranscript, current: InstructionSet, config: LearnerConfig) -> str:
    actions = "\n".join(
        f"- {a.name} {json.dumps(a.arguments, ensure_ascii=False, default=str)} @ {a.surface_url}"
        + ("" if a.ok else f" (failed: {a.error})")
        for a in transcript.actions
    )
    sections = [
        f"## USER PROMPT\n{transcript.prompt.strip()}",
        f"## CURRENT INSTRUCTIONS\n{json.dumps(current.to_dict(), indent=2, ensure_ascii=False)}",
        f"## RUN OUTCOME\n{transcript.status or 'unknown'} (final page: {transcript.url or 'unknown'})",
        f"## CONVERSATION (tail)\n{summarize_history(transcript.history, config.history_tail_turns, config.transcript_chars)}",
        f"## NAVIGATION NOTES (tail)\n{_clip(transcript.navigation_transcript, config.transcript_chars)}",
        f"## EXECUTED ACTIONS\n{actions or '(none)'}",
        f"## FINAL ASSISTANT MESSAGE\n{transcript.final_text.strip() or '(none)'}",
    ]
    return "\n\n".join(sections)


class SelfImprovementLearner:
    """Best-effort learner; failures leave the store untouched and are only logged."""

    def __init__(
        self,
        store: InstructionStore,
        config: Optional[LearnerConfig] = None,
        agent_config: Optional[AgentConfig] = None,
        client: Optional[AsyncOpenAI] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.config = config or LearnerConfig()
        agent_config = agent_config or AgentConfig()
        self.model = self.config.model or agent_config.model
        self.api_key = self.config.api_key or agent_config.api_key
        self.base_url = self.config.base_url or agent_config.base_url
        self.logger = logger or logging.getLogger("pagepilot.learner")
        self._client = client
        self.in_flight = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key or "not-set", base_url=self.base_url)
        return self._client

    async def _generate(self, prompt: str) -> InstructionUpdate:
        if not self.api_key and self._client is None:
            raise LearnerError("Missing API key for the learner model")
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": LEARNER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self.config.temperature,
            response_format=LEARNER_RESPONSE_FORMAT,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise LearnerError("Empty response from learner model")
        try:
            return InstructionUpdate.model_validate_json(content)
        except ValidationError as e:
            raise LearnerError(f"Learner output does not match the schema: {e.error_count()} errors") from e

    async def learn(self, transcript: RunTranscript) -> Optional[InstructionSet]:
        """Run one learning pass; returns the merged snapshot or None on failure."""
        self.in_flight += 1
        try:
            prompt = build_learner_prompt(transcript, self.store.snapshot(), self.config)
            update = await self._generate(prompt)
            merged = self.store.merge(update.to_instruction_set(), max_general=self.config.max_general_rules)
            self.logger.debug(f"Learner merged update into instructions v{merged.version}")
            return merged
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"Self-improvement failed; instructions unchanged: {e}")
            return None
        finally:
            self.in_flight -= 1

    def schedule(self, transcript: RunTranscript) -> asyncio.Task:
        """Start ``learn`` detached from the caller."""
        task = asyncio.ensure_future(self.learn(transcript))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled learning passes to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
