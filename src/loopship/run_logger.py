"""Structured session logging for loop runs.

Each run writes one JSON record under ``.loopship/logs`` describing its
iterations, attempts, skips and errors, plus summary statistics.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path(".loopship") / "logs"


@dataclass
class RunStats:
    """Statistics for one run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    attempts: int = 0
    stories_passed: int = 0
    stories_failed: int = 0
    stories_blocked: int = 0
    timeouts: int = 0
    agent_errors: int = 0

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": self.iterations,
            "attempts": self.attempts,
            "stories": {
                "passed": self.stories_passed,
                "failed": self.stories_failed,
                "blocked": self.stories_blocked,
            },
            "timeouts": self.timeouts,
            "agent_errors": self.agent_errors,
        }


class RunLogger:
    """Collects a run's history and writes it to a JSON file."""

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        project: str = "loop",
        agent: str = "",
    ):
        """Initialize the run logger.

        Args:
            log_dir: Directory for log files. Defaults to .loopship/logs.
            project: Project name, used in the file name.
            agent: Agent selector used for the run.
        """
        self.log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
        self.project = project
        self.stats = RunStats()

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_project = "".join(c if c.isalnum() else "_" for c in (project or "loop")[:30])
        self.log_file = self.log_dir / f"{timestamp}_{safe_project}.json"

        self.log_data = {
            "session": {
                "id": timestamp,
                "project": project,
                "agent": agent,
                "start_time": datetime.now().isoformat(),
            },
            "iterations": [],
            "errors": [],
        }

    def log_iteration(self, iteration: int, max_iterations: int) -> None:
        """Log the start of an iteration."""
        self.stats.iterations = iteration
        self.log_data["iterations"].append({
            "number": iteration,
            "max": max_iterations,
            "start_time": datetime.now().isoformat(),
        })
        logger.debug(f"Iteration {iteration}/{max_iterations} started")

    def _current(self) -> dict:
        if not self.log_data["iterations"]:
            self.log_data["iterations"].append({"number": 0})
        return self.log_data["iterations"][-1]

    def log_attempt_start(self, story_id: str, attempt: int) -> None:
        self.stats.attempts += 1
        self._current()["story"] = {
            "id": story_id,
            "attempt": attempt,
            "status": "in_progress",
        }

    def log_attempt_end(
        self,
        story_id: str,
        passed: bool,
        exit_code: Optional[int],
        duration_ms: int,
        timed_out: bool = False,
    ) -> None:
        if passed:
            self.stats.stories_passed += 1
        else:
            self.stats.stories_failed += 1
        if timed_out:
            self.stats.timeouts += 1

        entry = self._current().setdefault("story", {"id": story_id})
        entry.update({
            "status": "passed" if passed else "failed",
            "exit_code": exit_code,
            "duration_ms": duration_ms,
            "timed_out": timed_out,
            "end_time": datetime.now().isoformat(),
        })

    def log_skip(self, story_id: str, reason: str) -> None:
        self.stats.stories_blocked += 1
        self._current()["skipped"] = {"id": story_id, "reason": reason}

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })

    def log_agent_error(self, error: str, story_id: str) -> None:
        self.stats.agent_errors += 1
        self.log_error(error, {"story": story_id})

    def finalize(self, state: str, success: bool) -> Optional[Path]:
        """Finalize the log and write it to file.

        Returns:
            The log file path, or None if it could not be written.
        """
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["state"] = state
        self.log_data["session"]["success"] = success
        self.log_data["stats"] = self.stats.to_dict()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Run log written to: {self.log_file}")
            return self.log_file
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")
            return None
