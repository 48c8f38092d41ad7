"""The iteration engine.

Repeatedly picks the most urgent unfinished story from the task store,
runs the agent on it, and re-reads the store to see whether the agent
marked the story as passing. Stories that keep failing are blocked after
``max_retries`` attempts. Exactly one attempt is ever in flight.

The persisted ``passes`` flag is the only success signal. A clean exit
code is reported but not trusted: agents can exit 0 without finishing,
or crash after already recording success.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional

from .agent_runner import AgentRunner, ExecutionResult
from .control import ControlChannel
from .errors import ConfigurationError, ExecutionError, StoreError
from .progress_log import DEFAULT_TAIL_LINES, ProgressLog
from .prompts import build_story_prompt
from .task_store import Story, TaskDocument, TaskStore

if TYPE_CHECKING:
    from .reporter import Reporter

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle of one engine run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


@dataclass
class EngineSettings:
    """Validated knobs for one run."""

    agent: str = "claude"
    max_iterations: int = 25
    max_retries: int = 3
    timeout: Optional[float] = 600.0  # seconds per attempt
    delay: float = 1.0  # seconds between iterations
    progress_tail_lines: int = DEFAULT_TAIL_LINES
    reset_blocked: bool = False
    cwd: Optional[Path] = None
    prompt_template: Optional[str] = None  # Jinja2 text replacing the built-in prompt


@dataclass
class LoopResult:
    """Terminal summary of a run."""

    state: RunState
    iterations: int = 0
    stories_passed: List[str] = field(default_factory=list)
    stories_failed: int = 0
    blocked: List[str] = field(default_factory=list)
    remaining: List[str] = field(default_factory=list)
    total: int = 0
    completed_total: int = 0
    duration_s: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """True when every story passes; a run that completes with blocked stories is not a success."""
        return self.state == RunState.COMPLETED and not self.blocked


def select_next_story(document: TaskDocument) -> Optional[Story]:
    """Pick the candidate with the lowest priority value.

    Ties go to the story that appears first in the document.
    """
    candidates = document.candidates
    if not candidates:
        return None
    # min() keeps the first of equal keys
    return min(candidates, key=lambda s: s.priority)


class IterationEngine:
    """Drives stories through attempts until done, exhausted or aborted."""

    def __init__(
        self,
        store: TaskStore,
        runner: AgentRunner,
        progress: ProgressLog,
        reporter: Reporter,
        settings: EngineSettings,
        control: Optional[ControlChannel] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.runner = runner
        self.progress = progress
        self.reporter = reporter
        self.settings = settings
        self.control = control
        self._sleep = sleep
        self._clock = clock

        self.state = RunState.IDLE
        self.attempts: Dict[str, int] = {}
        self.result: Optional[LoopResult] = None
        self._document: Optional[TaskDocument] = None
        self._started = 0.0
        self._iteration = 0
        self._passed: List[str] = []
        self._failed_attempts = 0

    async def run(self) -> LoopResult:
        """Run until a terminal state.

        Returns:
            LoopResult for completed, exhausted or aborted runs.

        Raises:
            asyncio.CancelledError: On external shutdown, after the current
                agent process has been killed and the run marked aborted.
        """
        if self.state == RunState.RUNNING:
            raise RuntimeError("Engine is already running")

        self.state = RunState.RUNNING
        self.attempts = {}
        self.result = None
        self._started = self._clock()
        self._iteration = 0
        self._passed = []
        self._failed_attempts = 0
        settings = self.settings

        try:
            if settings.reset_blocked:
                cleared = self.store.clear_blocked()
                if cleared:
                    logger.info(f"Cleared blocked flag on {cleared} stories")

            document = self._load()
            self.progress.ensure_exists(document.project)
            self.progress.session_start(settings.agent, settings.max_iterations)
            self.reporter.start(settings.agent, settings.max_iterations, document)

            while self._iteration < settings.max_iterations:
                if self._stop_requested():
                    return await self._finish(RunState.ABORTED)

                self._iteration += 1
                self.reporter.iteration(self._iteration, settings.max_iterations)

                document = self._load()
                self.reporter.sync(document)

                story = select_next_story(document)
                if story is None:
                    return await self._finish(RunState.COMPLETED)

                attempt = self.attempts.get(story.id, 0) + 1
                self.attempts[story.id] = attempt

                if attempt > settings.max_retries:
                    document = self.store.set_blocked(story.id)
                    self._document = document
                    self.reporter.story_skipped(story, f"Max retries ({settings.max_retries}) exceeded")
                    self.reporter.sync(document)
                    continue

                await self._attempt(document, story, attempt)
                await self._pause()

            document = self._load()
            if select_next_story(document) is None:
                return await self._finish(RunState.COMPLETED)
            self.reporter.max_iterations_reached(settings.max_iterations)
            return await self._finish(RunState.EXHAUSTED)

        except StoreError as e:
            logger.error(f"Task store failure, aborting run: {e}")
            self.reporter.error(f"Task store error: {e}")
            return await self._finish(RunState.ABORTED, error=str(e))
        except ConfigurationError as e:
            logger.error(f"Configuration error, aborting run: {e}")
            self.reporter.error(str(e))
            return await self._finish(RunState.ABORTED, error=str(e))
        except asyncio.CancelledError:
            logger.warning("Run cancelled")
            if self.result is None:
                await self._finish(RunState.ABORTED, error="interrupted")
            raise

    async def _attempt(self, document: TaskDocument, story: Story, attempt: int) -> bool:
        """Run one attempt and report whether the store now shows the story passing."""
        settings = self.settings
        prompt = build_story_prompt(
            document,
            story,
            progress_excerpt=self.progress.tail(settings.progress_tail_lines),
            attempt=attempt,
            store_filename=self.store.path.name,
            template=settings.prompt_template,
        )
        self.reporter.story_start(story, self._iteration, attempt, len(document.candidates))

        started = self._clock()
        note = ""
        try:
            result = await self._invoke(prompt)
        except ExecutionError as e:
            result = e.result or ExecutionResult(succeeded=False)
            note = str(e)
            self.reporter.agent_error(story, e)
        if not result.duration_ms:
            result.duration_ms = int((self._clock() - started) * 1000)
        self.reporter.story_end(story, result)

        # An unreadable store here is fatal and propagates to run().
        document = self._load()
        updated = document.find(story.id)
        passed = updated is not None and updated.passes

        if passed:
            self.attempts[story.id] = 0
            self._passed.append(story.id)
            self.reporter.story_passed(story, result.duration_ms)
        else:
            self._failed_attempts += 1
            if not note and result.succeeded:
                note = "agent exited cleanly but did not mark the story as passing"
            self.reporter.story_failed(story, result, attempt, settings.max_retries)

        self.progress.record_attempt(
            story.id, attempt, passed, result.exit_code, result.duration_ms, note
        )
        self.reporter.sync(document)
        return passed

    async def _invoke(self, prompt: str) -> ExecutionResult:
        """Run the agent, racing it against an observer stop request."""
        settings = self.settings
        invocation = asyncio.ensure_future(self.runner.invoke(
            prompt,
            settings.agent,
            cwd=settings.cwd,
            timeout=settings.timeout,
            on_output=self.reporter.output,
        ))
        if self.control is None:
            return await invocation

        stop_waiter = asyncio.ensure_future(self.control.wait_for_stop())
        try:
            done, _ = await asyncio.wait(
                {invocation, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            stop_waiter.cancel()
            await self._cancel(invocation)
            raise
        stop_waiter.cancel()

        if invocation in done:
            return invocation.result()

        logger.info("Stop requested, terminating current agent invocation")
        await self._cancel(invocation)
        raise ExecutionError(
            "Stopped by observer request",
            ExecutionResult(succeeded=False, duration_ms=0),
        )

    @staticmethod
    async def _cancel(task: asyncio.Future) -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled invocation ended with: {e}")

    async def _pause(self) -> None:
        """Inter-iteration delay, cut short by a stop request."""
        delay = self.settings.delay
        if delay <= 0:
            return
        if self.control is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        stop_waiter = asyncio.ensure_future(self.control.wait_for_stop())
        try:
            await asyncio.wait({sleeper, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stop_waiter.cancel()

    def _stop_requested(self) -> bool:
        return self.control is not None and self.control.stop_requested

    def _load(self) -> TaskDocument:
        document = self.store.load()
        self._document = document
        return document

    async def _finish(self, state: RunState, error: Optional[str] = None) -> LoopResult:
        document = self._document
        if state != RunState.ABORTED or error is None:
            try:
                document = self._load()
            except StoreError as e:
                logger.warning(f"Could not reload task store for summary: {e}")

        stories = document.stories if document else []
        result = LoopResult(
            state=state,
            iterations=self._iteration,
            stories_passed=list(self._passed),
            stories_failed=self._failed_attempts,
            blocked=[s.id for s in stories if s.blocked and not s.passes],
            remaining=[s.id for s in stories if s.is_candidate],
            total=len(stories),
            completed_total=sum(1 for s in stories if s.passes),
            duration_s=self._clock() - self._started,
            error=error,
        )
        self.state = state
        self.result = result

        logger.info(f"Run finished: {state.value} after {result.iterations} iterations")
        self.progress.session_end(state.value, len(result.stories_passed), len(result.blocked), result.duration_s)
        self.reporter.finish(result, document)
        await self.reporter.notify(result, document)
        return result
