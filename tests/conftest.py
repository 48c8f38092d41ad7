"""Shared test fixtures for LoopShip tests."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Callable, Optional

import pytest
from rich.console import Console

from loopship.agent_runner import AGENTS, ExecutionResult, MockAgentRunner
from loopship.config import LoopConfig
from loopship.dashboard.events import EventBroadcaster
from loopship.loop import EngineSettings, IterationEngine, select_next_story
from loopship.progress_log import ProgressLog
from loopship.reporter import Reporter
from loopship.task_store import TaskStore


def make_prd(stories: list, project: str = "Todo App", **extra) -> dict:
    """Build a prd.json document."""
    data = {
        "project": project,
        "branchName": "feature/todo",
        "description": "A small todo application",
        "stories": stories,
    }
    data.update(extra)
    return data


def story(story_id: str, priority: int, passes: bool = False, blocked: bool = False, **extra) -> dict:
    """Build one story entry."""
    data = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": f"Implement {story_id}",
        "priority": priority,
        "acceptance": [f"{story_id} works", "Tests pass"],
        "passes": passes,
        "blocked": blocked,
    }
    data.update(extra)
    return data


async def no_sleep(_delay: float) -> None:
    """Stand-in for asyncio.sleep that returns immediately."""
    return None


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary target repository with a sample prd.json."""
    prd = make_prd([
        story("US-001", 1),
        story("US-002", 2),
        story("US-003", 3),
    ])
    (tmp_path / "prd.json").write_text(json.dumps(prd, indent=2), encoding="utf-8")
    return tmp_path


@pytest.fixture
def write_prd(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing prd.json into tmp_path."""

    def _write(stories: list, **extra) -> Path:
        path = tmp_path / "prd.json"
        path.write_text(json.dumps(make_prd(stories, **extra), indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def store(temp_repo: Path) -> TaskStore:
    return TaskStore(temp_repo / "prd.json")


@pytest.fixture
def progress(tmp_path: Path) -> ProgressLog:
    return ProgressLog(tmp_path / "progress.txt")


@pytest.fixture
def console() -> Console:
    """Console writing to memory instead of the terminal."""
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def reporter(console: Console, broadcaster: EventBroadcaster) -> Reporter:
    return Reporter(console=console, broadcaster=broadcaster)


def passing_script(store: TaskStore, fail_ids: tuple = ()) -> Callable[[str, str, int], ExecutionResult]:
    """Mock agent that marks the story the engine would pick as passing.

    Stories listed in ``fail_ids`` are left untouched (exit 0, no progress).
    """

    def _script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
        document = store.load()
        selected = select_next_story(document)
        if selected is not None and selected.id not in fail_ids:
            selected.passes = True
            store.save(document)
        return ExecutionResult(succeeded=True, output=f"working on {selected.id}\n", exit_code=0)

    return _script


@pytest.fixture
def make_engine(store: TaskStore, progress: ProgressLog, reporter: Reporter):
    """Factory building an IterationEngine around a MockAgentRunner."""

    def _make(
        script=None,
        control=None,
        engine_store: Optional[TaskStore] = None,
        **settings,
    ) -> IterationEngine:
        target = engine_store or store
        runner = MockAgentRunner(script=script or passing_script(target), agents=dict(AGENTS))
        settings.setdefault("delay", 0)
        return IterationEngine(
            target,
            runner,
            progress,
            reporter,
            EngineSettings(**settings),
            control=control,
            sleep=no_sleep,
        )

    return _make


@pytest.fixture
def mock_config(temp_repo: Path) -> LoopConfig:
    """Create a configuration pointing at the temp repo."""
    return LoopConfig(repo_path=temp_repo, delay=0)
