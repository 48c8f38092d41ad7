"""Event system for live loop observers.

This module owns the shared snapshot every observer sees on attach and
turns loop progress into ``{type, payload}`` messages for subscribers
(normally the WebSocket ConnectionManager).
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, List, Optional

if TYPE_CHECKING:
    from ..task_store import Story, TaskDocument

logger = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 500
RULE = "━" * 50


class EventType(str, Enum):
    """Server to observer message types."""

    STORIES = "stories"
    STATUS = "status"
    STORY_START = "story_start"
    STORY_END = "story_end"
    OUTPUT = "output"
    LOOP_COMPLETE = "loop_complete"


class RunStatus(str, Enum):
    """Run status as shown to observers."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    STOPPED = "stopped"
    ERROR = "error"


_SUCCESS_MARKERS = ("✓", "✅", "PASS")
_ERROR_MARKERS = ("✗", "❌", "ERROR", "FAIL")
_FILE_PATTERN = re.compile(r"\.(py|js|jsx|ts|tsx|json|md|css|html|ya?ml|toml)\b")


def classify_line(line: str) -> str:
    """Pick a presentation category for one output line.

    Purely cosmetic; pass/fail is never derived from output text.
    """
    if any(marker in line for marker in _SUCCESS_MARKERS):
        return "success"
    if any(marker in line for marker in _ERROR_MARKERS):
        return "error"
    if _FILE_PATTERN.search(line) or "src/" in line or "./" in line:
        return "file"
    if line.startswith(">") or line.startswith("$"):
        return "command"
    return "default"


@dataclass
class Event:
    """A single message to broadcast to observers."""

    type: EventType
    payload: Any = field(default_factory=dict)

    def to_message(self) -> dict:
        return {"type": self.type.value, "payload": self.payload}

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_message(), ensure_ascii=False)


@dataclass
class OutputLine:
    id: int
    text: str
    type: str = "default"
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class StoryView:
    """Observer-facing projection of one story."""

    id: str
    title: str
    status: str = "pending"  # pending, running, passed, failed, blocked
    priority: int = 0
    duration: Optional[int] = None


@dataclass
class LoopSnapshot:
    """Shared state replayed to every observer on attach."""

    status: RunStatus = RunStatus.IDLE
    stories: List[StoryView] = field(default_factory=list)
    output: Deque[OutputLine] = field(default_factory=lambda: deque(maxlen=MAX_OUTPUT_LINES))
    current_story: Optional[str] = None
    started_at: Optional[float] = None
    completed_count: int = 0

    def story(self, story_id: str) -> Optional[StoryView]:
        for view in self.stories:
            if view.id == story_id:
                return view
        return None

    def to_dict(self) -> dict:
        """Convert state to dictionary."""
        return {
            "status": self.status.value,
            "stories": [asdict(s) for s in self.stories],
            "output": [asdict(line) for line in self.output],
            "currentStory": self.current_story,
            "startedAt": self.started_at,
            "completedCount": self.completed_count,
        }


class EventBroadcaster:
    """Keeps the loop snapshot and publishes every change to subscribers.

    Subscribers are synchronous callables and must not block; the
    WebSocket layer only enqueues messages per connection.
    """

    def __init__(
        self,
        max_output_lines: int = MAX_OUTPUT_LINES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_output_lines = max_output_lines
        self._clock = clock
        self._subscribers: List[Callable[[Event], None]] = []
        self._state = LoopSnapshot(output=deque(maxlen=max_output_lines))
        self._line_id = 0
        self._partial = ""

    @property
    def state(self) -> LoopSnapshot:
        """Get current snapshot."""
        return self._state

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Event], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber; one failing subscriber never stops the rest."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event subscriber: {e}")

    def snapshot_messages(self) -> List[dict]:
        """Messages that bring a late joiner up to date."""
        return [
            self._stories_event().to_message(),
            Event(EventType.STATUS, {"status": self._state.status.value}).to_message(),
            Event(
                EventType.OUTPUT,
                {"lines": [{"text": l.text, "type": l.type} for l in self._state.output]},
            ).to_message(),
        ]

    # --- Loop event handlers ---

    def set_status(self, status: RunStatus) -> None:
        if self._state.status == status:
            return
        self._state.status = status
        self.publish(Event(EventType.STATUS, {"status": status.value}))

    def loop_start(self, document: TaskDocument) -> None:
        """Reset the snapshot for a new run."""
        self._state = LoopSnapshot(
            status=RunStatus.RUNNING,
            stories=[self._project(story, None) for story in document.stories],
            output=deque(maxlen=self._max_output_lines),
            started_at=self._clock(),
            completed_count=len(document.passed),
        )
        self._partial = ""
        self.publish(self._stories_event())
        self.publish(Event(EventType.STATUS, {"status": RunStatus.RUNNING.value}))

    def sync_stories(self, document: TaskDocument) -> bool:
        """Refresh the projection from a freshly loaded document.

        Returns:
            True if anything changed (and a ``stories`` message went out).
        """
        previous = {view.id: view for view in self._state.stories}
        stories = [self._project(story, previous.get(story.id)) for story in document.stories]
        if stories == self._state.stories:
            return False
        self._state.stories = stories
        self._state.completed_count = len(document.passed)
        self.publish(self._stories_event())
        return True

    def story_start(self, story: Story, iteration: int, attempt: int, remaining: int) -> None:
        self._state.current_story = story.id
        view = self._state.story(story.id)
        if view is not None:
            view.status = "running"

        self.publish(Event(EventType.STORY_START, {
            "storyId": story.id,
            "title": story.title,
            "iteration": iteration,
            "attempt": attempt,
            "remaining": remaining,
        }))
        self.add_output(f"▶ Starting story {story.id}: {story.title}", "info")
        self.add_output(f"  Iteration {iteration}, Attempt {attempt}", "dim")

    def agent_output(self, text: str) -> None:
        """Split streamed agent text into lines; a trailing partial line is held back."""
        data = self._partial + text
        *lines, self._partial = data.split("\n")
        for line in lines:
            self._add_agent_line(line)

    def flush_output(self) -> None:
        if self._partial:
            line, self._partial = self._partial, ""
            self._add_agent_line(line)

    def add_output(self, text: str, kind: str = "default") -> None:
        """Append a line to the ring buffer and broadcast it."""
        self._line_id += 1
        line = OutputLine(id=self._line_id, text=text, type=kind)
        self._state.output.append(line)
        self.publish(Event(EventType.OUTPUT, {"text": line.text, "type": line.type}))

    def clear_output(self) -> None:
        self._state.output.clear()
        self.publish(Event(EventType.OUTPUT, {"lines": [], "cleared": True}))

    def story_end(
        self,
        story_id: str,
        passed: bool,
        duration_ms: int,
        blocked: bool = False,
    ) -> None:
        self.flush_output()
        view = self._state.story(story_id)
        if view is not None:
            view.status = "passed" if passed else ("blocked" if blocked else "failed")
            view.duration = duration_ms
            if passed:
                self._state.completed_count += 1
        self._state.current_story = None

        icon = "✅" if passed else "❌"
        verdict = "PASSED" if passed else ("BLOCKED" if blocked else "FAILED")
        self.add_output(
            f"{icon} Story {story_id} {verdict} ({duration_ms / 1000:.1f}s)",
            "success" if passed else "error",
        )
        self.publish(Event(EventType.STORY_END, {
            "storyId": story_id,
            "passed": passed,
            "blocked": blocked,
            "duration": duration_ms,
            "completedCount": self._state.completed_count,
            "totalCount": len(self._state.stories),
        }))

    def loop_complete(self, success: bool, state: str, error: Optional[str] = None) -> None:
        self.flush_output()
        if success:
            status = RunStatus.COMPLETE
        elif error:
            status = RunStatus.ERROR
        else:
            status = RunStatus.STOPPED
        self._state.current_story = None

        started = self._state.started_at or self._clock()
        duration_ms = int((self._clock() - started) * 1000)
        minutes, seconds = divmod(duration_ms // 1000, 60)

        self.add_output(RULE, "dim")
        if success:
            self.add_output("🎉 ALL STORIES COMPLETE!", "success")
        else:
            self.add_output(f"⚠️ Loop ended: {state}" + (f" ({error})" if error else ""), "warning")
        self.add_output(f"Total time: {minutes}m {seconds}s", "dim")
        self.add_output(RULE, "dim")

        self.set_status(status)
        self.publish(Event(EventType.LOOP_COMPLETE, {
            "success": success,
            "state": state,
            "error": error,
            "duration": duration_ms,
            "completedCount": self._state.completed_count,
            "totalCount": len(self._state.stories),
        }))

    # --- helpers ---

    def _add_agent_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if line.strip():
            self.add_output(line, classify_line(line))

    def _stories_event(self) -> Event:
        return Event(EventType.STORIES, [asdict(view) for view in self._state.stories])

    def _project(self, story: Story, previous: Optional[StoryView]) -> StoryView:
        if story.passes:
            status = "passed"
        elif story.blocked:
            status = "blocked"
        elif previous is not None and previous.status in ("running", "failed"):
            status = previous.status
        else:
            status = "pending"
        return StoryView(
            id=story.id,
            title=story.title,
            status=status,
            priority=story.priority,
            duration=previous.duration if previous is not None else None,
        )
