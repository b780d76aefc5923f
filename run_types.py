"""Typed objects describing one agent run."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class RunStatus(str, Enum):
    """Terminal outcome of a run."""

    COMPLETED = "completed"
    MAX_STEPS = "max_steps"
    CANCELLED = "cancelled"
    ERROR = "error"


class ControllerState(str, Enum):
    IDLE = "idle"
    STEPPING = "stepping"
    TOOL_CALLING = "tool_calling"
    FINISHING = "finishing"
    CANCELLING = "cancelling"


class CancellationToken:
    """Cooperative cancellation flag checked at every suspension point.

    Cancellation never raises: ``sleep`` and ``guard`` report it through
    their return values so callers can unwind normally.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        if self.cancelled:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def guard(self, awaitable: Awaitable[T]) -> Tuple[bool, Optional[T]]:
        """Await ``awaitable`` unless cancellation wins the race.

        Returns ``(cancelled, value)``. A cancelled awaitable is cancelled
        and its result discarded.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return True, None
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if work.done():
            return False, work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        return True, None


@dataclass
class ExecutedAction:
    """One action dispatched during a run."""

    name: str
    arguments: Dict[str, Any]
    surface_url: str
    ok: bool = True
    error: Optional[str] = None
    step: int = 0
    timestamp: Optional[datetime] = None


@dataclass
class Run:
    """One user-initiated task execution."""

    prompt: str
    max_steps: int
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    token: CancellationToken = field(default_factory=CancellationToken)
    step_count: int = 0
    assistant_text: str = ""
    reasoning_text: str = ""
    navigation_transcript: str = ""
    actions: List[ExecutedAction] = field(default_factory=list)
    status: Optional[RunStatus] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def finished(self) -> bool:
        return self.status is not None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return max(0.0, (end - self.started_at).total_seconds())

    @property
    def action_count(self) -> int:
        return len(self.actions)

    def finish(self, status: RunStatus, error: Optional[str] = None) -> None:
        if self.status is not None:
            return
        self.status = status
        self.error = error
        self.finished_at = datetime.now()
