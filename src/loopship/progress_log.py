"""Append-only progress log shared with the agent.

``progress.txt`` is a human-readable record the agent reads for context
and writes its learnings to. The engine only appends session markers and
one summary line per attempt, and reads back a bounded tail for prompts.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "progress.txt"
DEFAULT_TAIL_LINES = 50


class ProgressLog:
    """Reads and appends to the progress log file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else Path.cwd() / DEFAULT_FILENAME

    def ensure_exists(self, project: str = "") -> bool:
        """Create the log with a header if it is missing.

        Returns:
            True if the file was created.
        """
        if self.path.exists():
            return False
        header = (
            "# Progress Log\n\n"
            f"Project: {project or 'unnamed'}\n"
            f"Started: {datetime.now().isoformat()}\n\n"
            "## Learnings\n\n"
        )
        self.path.write_text(header, encoding="utf-8")
        logger.info(f"Created progress log: {self.path}")
        return True

    def tail(self, lines: int = DEFAULT_TAIL_LINES) -> str:
        """Return the last ``lines`` lines, or "" if the log is missing."""
        if lines <= 0:
            return ""
        try:
            with open(self.path, encoding="utf-8", errors="replace") as f:
                return "".join(deque(f, maxlen=lines)).rstrip("\n")
        except FileNotFoundError:
            return ""
        except OSError as e:
            logger.warning(f"Could not read progress log {self.path}: {e}")
            return ""

    def append(self, text: str) -> None:
        """Append text, terminated by a newline."""
        if not text.endswith("\n"):
            text += "\n"
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            # Context for the agent only; never worth ending a run over.
            logger.warning(f"Could not append to progress log {self.path}: {e}")

    def session_start(self, agent: str, max_iterations: int) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.append(f"\n## Session {stamp} (agent: {agent}, max iterations: {max_iterations})\n")

    def session_end(self, state: str, passed: int, blocked: int, duration_s: float) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.append(
            f"[{stamp}] Session ended: {state} "
            f"({passed} passed, {blocked} blocked, {duration_s:.0f}s)"
        )

    def record_attempt(
        self,
        story_id: str,
        attempt: int,
        passed: bool,
        exit_code: Optional[int],
        duration_ms: int,
        note: str = "",
    ) -> None:
        """Append a one-line summary of an agent attempt."""
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        outcome = "PASSED" if passed else "FAILED"
        line = (
            f"[{stamp}] Story {story_id} attempt {attempt}: {outcome} "
            f"(exit code {exit_code if exit_code is not None else 'none'}, "
            f"{duration_ms / 1000:.1f}s)"
        )
        if note:
            line += f" - {note}"
        self.append(line)
