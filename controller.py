"""Agent run controller: the observe, decide, act step loop."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional

from config import PilotConfig
from exceptions import ScreenshotError, describe_error, is_image_rejection
from executor import Action, ActionExecutor
from frames import Frame, FrameStabilizer
from history import (
    ImagePart,
    TextPart,
    ToolInvocationPart,
    ToolResultPart,
    Turn,
    prompt_turn,
    prune_dangling_tool_calls,
    sanitize,
    tool_result_turn,
)
from instructions import InstructionStore
from learner import RunTranscript, SelfImprovementLearner
from message_types import tool_results_summary
from model_client import Done, ModelClient, ReasoningDelta, StreamError, TextDelta, ToolCall
from navigation_log import NavigationLogFormatter, action_line, done_line, max_steps_line, step_line
from overlay import NullOverlay, OverlayEvent, OverlaySink
from prompts import compose_system_instruction
from run_types import ControllerState, ExecutedAction, Run, RunStatus
from surfaces.base import ControlledSurface


class StepOutcome(str, Enum):
    CONTINUE = "continue"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


class RunObserver:
    """Receives streamed run output. Override what you need."""

    def on_state_change(self, state: ControllerState) -> None:
        pass

    def on_text_delta(self, run: Run, text: str) -> None:
        pass

    def on_reasoning_delta(self, run: Run, text: str) -> None:
        pass

    def on_navigation_delta(self, run: Run, raw: str, pretty_lines: List[str]) -> None:
        pass

    def on_stream_complete(self, run: Run) -> None:
        pass

    def on_error(self, run: Run, message: str) -> None:
        pass


async def _next_event(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class _NavigationStream:
    """Navigation lines for one run, held back until the first tool call."""

    def __init__(self, controller: "AgentRunController", run: Run):
        self.controller = controller
        self.run = run
        self.formatter = NavigationLogFormatter()
        self.active = False
        self._pending: List[str] = []

    async def emit(self, raw: str) -> None:
        if not self.active:
            self._pending.append(raw)
            return
        await self._deliver(raw)

    async def activate(self) -> None:
        if self.active:
            return
        self.active = True
        await self.controller._send_overlay(OverlayEvent.start(self.run.run_id))
        pending, self._pending = self._pending, []
        for raw in pending:
            await self._deliver(raw)

    async def _deliver(self, raw: str) -> None:
        self.run.navigation_transcript += raw
        lines = self.formatter.feed(raw)
        self.controller.observer.on_navigation_delta(self.run, raw, lines)
        for line in lines:
            await self.controller._send_overlay(OverlayEvent.log(self.run.run_id, line))


class AgentRunController:
    """Drives one run at a time against a single controlled surface."""

    def __init__(
        self,
        config: PilotConfig,
        surface: ControlledSurface,
        model: ModelClient,
        instruction_store: Optional[InstructionStore] = None,
        learner: Optional[SelfImprovementLearner] = None,
        overlay: Optional[OverlaySink] = None,
        observer: Optional[RunObserver] = None,
        logger: Optional[logging.Logger] = None,
        stabilizer: Optional[FrameStabilizer] = None,
        executor: Optional[ActionExecutor] = None,
    ):
        self.config = config
        self.surface = surface
        self.model = model
        self.instruction_store = instruction_store or InstructionStore()
        self.learner = learner
        self.overlay = overlay or NullOverlay()
        self.observer = observer or RunObserver()
        self.logger = logger or logging.getLogger("pagepilot.controller")
        self.stabilizer = stabilizer or FrameStabilizer(config.stability, logger=self.logger.getChild("frames"))
        self.executor = executor or ActionExecutor(
            surface,
            config=config.executor,
            surface_config=config.surface,
            stabilizer=self.stabilizer,
            overlay=self.overlay,
            logger=self.logger.getChild("executor"),
        )

        self.history: List[Turn] = []
        self.state = ControllerState.IDLE
        self.active_run: Optional[Run] = None
        self.last_frame: Optional[Frame] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_busy(self) -> bool:
        return self.active_run is not None

    def cancel(self) -> None:
        """Request cooperative cancellation of the active run."""
        run = self.active_run
        if run is None or run.cancelled:
            return
        self.logger.info(f"Cancelling run {run.run_id}")
        run.token.cancel()
        self._set_state(ControllerState.CANCELLING)

    async def submit_task(self, prompt: str, run_id: Optional[str] = None) -> Run:
        """Run a task to completion; an in-flight run is cancelled first."""
        while self.active_run is not None:
            self.cancel()
            await self._idle.wait()

        run = Run(prompt=prompt, max_steps=self.config.agent.max_steps)
        if run_id:
            run.run_id = run_id
        self.active_run = run
        self._idle.clear()
        self.logger.info(f"Run {run.run_id} started (max_steps={run.max_steps}): {prompt[:80]}")

        navigation = _NavigationStream(self, run)
        try:
            await self._execute_run(run, navigation)
        except Exception as e:
            self.logger.exception(f"Run {run.run_id} crashed")
            self._fail(run, e)
        finally:
            await self._finish_run(run, navigation)
        return run

    async def _execute_run(self, run: Run, navigation: _NavigationStream) -> None:
        self.history = sanitize(prune_dangling_tool_calls(self.history))
        self.executor.bind_run(run.run_id, run.token)
        self._set_state(ControllerState.STEPPING)

        frame = await self._capture_frame(run)
        if frame is None:
            return
        self.history.append(prompt_turn(run.prompt, ImagePart(frame.data, frame.mime_type)))

        for step in range(1, run.max_steps + 1):
            run.step_count = step
            self._set_state(ControllerState.STEPPING)
            await navigation.emit(step_line(step, run.max_steps))

            outcome = await self._run_step(run, navigation)
            if outcome == StepOutcome.CONTINUE:
                continue
            if outcome == StepOutcome.DONE:
                self._set_state(ControllerState.FINISHING)
                await navigation.emit(done_line())
                run.finish(RunStatus.COMPLETED)
            elif outcome == StepOutcome.CANCELLED:
                run.finish(RunStatus.CANCELLED)
            return

        self._set_state(ControllerState.FINISHING)
        await navigation.emit(max_steps_line())
        self.logger.info(f"Run {run.run_id} stopped after {run.max_steps} steps")
        run.finish(RunStatus.MAX_STEPS)

    async def _run_step(self, run: Run, navigation: _NavigationStream) -> StepOutcome:
        token = run.token
        system_instruction = compose_system_instruction(self.instruction_store, self._current_url())

        text_chunks: List[str] = []
        calls: List[ToolCall] = []
        iterator = self.model.stream_decision(self.history, system_instruction, run_id=run.run_id).__aiter__()
        try:
            while True:
                cancelled, event = await token.guard(_next_event(iterator))
                if cancelled:
                    return StepOutcome.CANCELLED
                if event is None or isinstance(event, Done):
                    break
                if isinstance(event, ReasoningDelta):
                    run.reasoning_text += event.text
                    self.observer.on_reasoning_delta(run, event.text)
                elif isinstance(event, TextDelta):
                    text_chunks.append(event.text)
                    run.assistant_text += event.text
                    self.observer.on_text_delta(run, event.text)
                elif isinstance(event, ToolCall):
                    calls.append(event)
                elif isinstance(event, StreamError):
                    self._fail(run, event.error)
                    return StepOutcome.ERROR
        finally:
            await self._close_stream(iterator)

        model_turn = Turn("model", [])
        text = "".join(text_chunks)
        if text:
            model_turn.parts.append(TextPart(text))
        model_turn.parts.extend(ToolInvocationPart(c.call_id, c.name, c.arguments) for c in calls)
        if model_turn.parts:
            self.history.append(model_turn)

        if not calls:
            return StepOutcome.DONE

        self._set_state(ControllerState.TOOL_CALLING)
        await navigation.activate()

        results: List[ToolResultPart] = []
        for call in calls:
            if token.cancelled:
                return StepOutcome.CANCELLED
            await navigation.emit(action_line(call.name, call.arguments))
            result = await self.executor.execute(Action(call.name, call.arguments, call.call_id))
            if token.cancelled:
                return StepOutcome.CANCELLED
            run.actions.append(
                ExecutedAction(
                    name=call.name,
                    arguments=dict(call.arguments),
                    surface_url=result.surface_url,
                    ok=result.ok,
                    error=result.error,
                    step=run.step_count,
                    timestamp=datetime.now(),
                )
            )
            results.append(ToolResultPart(call.call_id, call.name, result.to_response()))

        self.logger.debug(f"Step {run.step_count}: {tool_results_summary(results)}")

        frame = await self._capture_frame(run)
        if frame is None:
            return StepOutcome.CANCELLED if token.cancelled else StepOutcome.ERROR
        results[-1].image = ImagePart(frame.data, frame.mime_type)
        self.history.append(tool_result_turn(results))
        return StepOutcome.CONTINUE

    async def _capture_frame(self, run: Run) -> Optional[Frame]:
        """Stable frame for the next decision; None on failure or cancellation."""
        try:
            frame = await self.stabilizer.capture_stable_frame(self.surface, run.token)
        except ScreenshotError as e:
            self._fail(run, e)
            return None
        if run.token.cancelled:
            run.finish(RunStatus.CANCELLED)
            return None
        self.last_frame = frame
        self.executor.set_reference_frame(frame)
        return frame

    async def _close_stream(self, iterator: AsyncIterator[Any]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            self.logger.debug(f"Error closing model stream: {e}")

    def _fail(self, run: Run, error: Any) -> None:
        if run.finished:
            return
        message = describe_error(error)
        self.logger.error(f"Run {run.run_id} failed: {error}")
        if is_image_rejection(error):
            self.logger.warning("Model rejected the screenshot; resetting conversation history")
            self.history = []
        run.finish(RunStatus.ERROR, message)
        self.observer.on_error(run, message)

    async def _finish_run(self, run: Run, navigation: _NavigationStream) -> None:
        if not run.finished:
            run.finish(RunStatus.CANCELLED if run.cancelled else RunStatus.COMPLETED)
        if run.status in (RunStatus.CANCELLED, RunStatus.ERROR):
            self.history = prune_dangling_tool_calls(self.history)

        for line in navigation.formatter.flush():
            await self._send_overlay(OverlayEvent.log(run.run_id, line))
        if navigation.active:
            await self._send_overlay(OverlayEvent.highlight_clear(run.run_id))
            await self._send_overlay(OverlayEvent.end(run.run_id))
        self.observer.on_stream_complete(run)

        self.executor.bind_run(None, None)
        self.logger.info(
            f"Run {run.run_id} finished: {run.status.value} after {run.step_count} steps, "
            f"{run.action_count} actions ({run.duration_seconds:.1f}s)"
        )

        if self.config.reporting.save_traces:
            self._write_trace(run)
        if (
            self.learner is not None
            and self.config.learner.enabled
            and run.status in (RunStatus.COMPLETED, RunStatus.MAX_STEPS)
        ):
            self.learner.schedule(RunTranscript.from_run(run, self.history, self._current_url()))

        self.active_run = None
        self._set_state(ControllerState.IDLE)
        self._idle.set()

    def _write_trace(self, run: Run) -> Optional[Path]:
        """Persist a lightweight trace of the run (no images)."""
        trace_path = Path(self.config.reporting.traces_folder) / f"run-{run.run_id}.json"
        try:
            trace_path.parent.mkdir(parents=True, exist_ok=True)
            payload = {
                "run_id": run.run_id,
                "prompt": run.prompt,
                "status": run.status.value if run.status else None,
                "error": run.error,
                "started_at": run.started_at.isoformat(),
                "finished_at": run.finished_at.isoformat() if run.finished_at else None,
                "steps": run.step_count,
                "assistant_text": run.assistant_text,
                "navigation": run.navigation_transcript,
                "actions": [
                    {
                        "step": a.step,
                        "action": a.name,
                        "arguments": a.arguments,
                        "ok": a.ok,
                        "error": a.error,
                        "url": a.surface_url,
                    }
                    for a in run.actions
                ],
            }
            trace_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
            return trace_path
        except OSError as exc:
            self.logger.warning(f"Failed to write trace file {trace_path}: {exc}")
            return None

    async def _send_overlay(self, event: OverlayEvent) -> None:
        try:
            await self.overlay.send(event)
        except Exception as e:
            self.logger.debug(f"Overlay event {event.type} failed: {e}")

    def _set_state(self, state: ControllerState) -> None:
        if state == self.state:
            return
        self.logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        self.observer.on_state_change(state)

    def _current_url(self) -> str:
        try:
            return self.surface.current_url()
        except Exception:
            return ""
