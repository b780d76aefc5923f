"""Run the pagepilot agent against a live browser page."""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from config import PilotConfig, load_config
from controller import AgentRunController, RunObserver
from exceptions import PilotError
from instructions import InstructionStore
from learner import SelfImprovementLearner
from model_client import ModelClient
from overlay import NullOverlay, PageOverlay
from run_types import Run, RunStatus
from surfaces.browser import BrowserSurface


class ConsoleObserver(RunObserver):
    """Prints streamed run output to the terminal."""

    def __init__(self, show_reasoning: bool = False):
        self.show_reasoning = show_reasoning
        self._text_open = False

    def on_text_delta(self, run: Run, text: str) -> None:
        self._text_open = True
        sys.stdout.write(text)
        sys.stdout.flush()

    def on_reasoning_delta(self, run: Run, text: str) -> None:
        if self.show_reasoning:
            sys.stderr.write(text)
            sys.stderr.flush()

    def on_navigation_delta(self, run: Run, raw: str, pretty_lines: List[str]) -> None:
        for line in pretty_lines:
            self._close_text()
            print(f"  › {line}")

    def on_error(self, run: Run, message: str) -> None:
        self._close_text()
        print(f"✗ {message}")

    def on_stream_complete(self, run: Run) -> None:
        self._close_text()
        if run.status == RunStatus.CANCELLED:
            print("(stopped)")
        elif run.status == RunStatus.MAX_STEPS:
            print(f"(stopped after {run.max_steps} steps)")

    def _close_text(self) -> None:
        if self._text_open:
            print()
            self._text_open = False


async def _read_tasks_interactively() -> List[str]:
    line = await asyncio.to_thread(input, "task> ")
    line = line.strip()
    return [] if line.lower() in {"exit", "quit"} else [line]


async def run_from_cli_args(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Entry point shared by the CLI script."""
    config_path = Path(args.config) if args.config else None
    cli_overrides = {
        "browser": args.browser,
        "headful": args.headful or None,
        "max_steps": args.max_steps,
        "model": args.model,
        "base_url": args.base_url,
        "learn": False if args.no_learn else None,
        "verbose": args.verbose or None,
    }
    cli_overrides = {k: v for k, v in cli_overrides.items() if v is not None}

    try:
        config = load_config(config_path, cli_overrides, required=bool(args.config))
    except Exception as exc:
        logger.error(f"Failed to load config: {exc}")
        return 1

    if not args.task and not args.interactive:
        logger.error("Nothing to do: pass --task or --interactive")
        return 2

    return await run_session(config, args.task or [], args.interactive, args.start_url, logger)


async def run_session(
    config: PilotConfig,
    tasks: List[str],
    interactive: bool,
    start_url: Optional[str],
    logger: logging.Logger,
) -> int:
    """Run tasks sequentially in one chat session on one page."""
    surface = BrowserSurface(
        browser_type=config.surface.browser,
        headless=config.surface.headless,
        viewport_width=config.surface.viewport_width,
        viewport_height=config.surface.viewport_height,
        device_scale_factor=config.surface.device_scale_factor,
        slow_mo=config.surface.slow_mo,
        navigation_timeout_ms=config.surface.navigation_timeout_ms,
        hide_overlay_in_screenshots=config.surface.show_overlay,
        logger=logger.getChild("surface"),
    )

    instructions_path = config.learner.instructions_path
    store = (
        InstructionStore.load(instructions_path, logger=logger.getChild("instructions"))
        if instructions_path
        else InstructionStore(logger=logger.getChild("instructions"))
    )
    learner = (
        SelfImprovementLearner(store, config.learner, config.agent, logger=logger.getChild("learner"))
        if config.learner.enabled
        else None
    )
    overlay = PageOverlay(surface, logger=logger.getChild("overlay")) if config.surface.show_overlay else NullOverlay()

    controller = AgentRunController(
        config=config,
        surface=surface,
        model=ModelClient(config.agent, logger=logger.getChild("model")),
        instruction_store=store,
        learner=learner,
        overlay=overlay,
        observer=ConsoleObserver(show_reasoning=config.verbose),
        logger=logger.getChild("controller"),
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl-C will abort the process")

    exit_code = 0
    try:
        await surface.start(start_url)
        pending = list(tasks)
        while True:
            if not pending:
                if not interactive:
                    break
                try:
                    pending = await _read_tasks_interactively()
                except EOFError:
                    break
                if not pending:
                    break
            prompt = pending.pop(0)
            if not prompt:
                continue
            run = await controller.submit_task(prompt)
            if run.status == RunStatus.ERROR:
                exit_code = 1
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        if learner is not None:
            if learner.in_flight:
                logger.info(f"Waiting for {learner.in_flight} learning pass(es) to finish")
            await learner.drain()
        if instructions_path:
            store.save(instructions_path)
            logger.info(f"Saved instructions v{store.version} to {instructions_path}")
        await surface.close()

    return exit_code


def _build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Let a multimodal model operate a web page.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --task "Find the opening hours of the city library"
  %(prog)s --interactive --headful --start-url https://example.com
  %(prog)s --task "Search for pagepilot" --task "Open the first result" --max-steps 20
        """,
    )

    task_group = parser.add_argument_group("Tasks")
    task_group.add_argument(
        "--task",
        action="append",
        help="Task for the agent (can be used multiple times; runs sequentially)",
    )
    task_group.add_argument(
        "--interactive",
        "-i",
        action="store_true",
        help="Read tasks from stdin until EOF or 'exit'",
    )
    task_group.add_argument(
        "--max-steps",
        type=int,
        help="Step budget per task (clamped to 1..50)",
    )
    task_group.add_argument(
        "--no-learn",
        action="store_true",
        help="Disable the post-run instruction learner",
    )

    browser_group = parser.add_argument_group("Browser Options")
    browser_group.add_argument(
        "--browser",
        choices=["chromium", "firefox", "webkit"],
        help="Browser engine to use (default: chromium)",
    )
    browser_group.add_argument(
        "--headful",
        action="store_true",
        help="Run browser in headful mode (show GUI and overlay)",
    )
    browser_group.add_argument(
        "--start-url",
        help="Page to open before the first task",
    )

    model_group = parser.add_argument_group("Model Options")
    model_group.add_argument("--model", help="Model name override")
    model_group.add_argument("--base-url", help="OpenAI-compatible endpoint override")

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--config",
        help="Path to config file (default: config.json if exists)",
    )
    output_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output",
    )
    return parser


def main() -> None:
    """Main entry point."""
    parser = _build_arg_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s" if not args.verbose else "[%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger("pagepilot")

    try:
        exit_code = asyncio.run(run_from_cli_args(args, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 130
    except PilotError as exc:
        logger.error(f"Error: {exc}")
        exit_code = 1
    except Exception as exc:
        logger.exception(f"Unexpected error: {exc}")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
