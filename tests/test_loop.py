"""Tests for the iteration engine."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from conftest import make_prd, passing_script, story
from loopship.agent_runner import ExecutionResult
from loopship.control import ControlChannel
from loopship.errors import AgentTimeoutError, ExecutionError
from loopship.loop import RunState, select_next_story
from loopship.task_store import TaskDocument, TaskStore


def _document(*stories: dict) -> TaskDocument:
    return TaskDocument.from_dict(make_prd(list(stories)))


class TestSelectNextStory:
    """Tests for story selection."""

    def test_lowest_priority_wins(self) -> None:
        """The smallest priority value is the most urgent."""
        document = _document(story("A", 3), story("B", 1), story("C", 2))

        assert select_next_story(document).id == "B"

    def test_ties_go_to_list_order(self) -> None:
        """Equal priorities are broken by position in the document."""
        document = _document(story("A", 2), story("B", 1), story("C", 1))

        assert select_next_story(document).id == "B"

    def test_skips_passing_and_blocked(self) -> None:
        """Passing and blocked stories are never candidates."""
        document = _document(
            story("A", 1, passes=True),
            story("B", 2, blocked=True),
            story("C", 3),
        )

        assert select_next_story(document).id == "C"

    def test_none_when_nothing_left(self) -> None:
        """No candidates means nothing to select."""
        document = _document(story("A", 1, passes=True), story("B", 2, blocked=True))

        assert select_next_story(document) is None

    def test_selection_is_stable(self) -> None:
        """Selecting twice without changes yields the same story."""
        document = _document(story("A", 1), story("B", 1))

        assert select_next_story(document).id == select_next_story(document).id


class TestIterationEngine:
    """Tests for IterationEngine.run."""

    def test_completes_all_stories_in_priority_order(self, make_engine, store: TaskStore) -> None:
        """Each story is attempted once, most urgent first."""
        engine = make_engine()

        result = asyncio.run(engine.run())

        assert result.state == RunState.COMPLETED
        assert result.success is True
        assert result.stories_passed == ["US-001", "US-002", "US-003"]
        assert engine.runner.call_count == 3
        assert all(s.passes for s in store.load().stories)

    def test_already_complete_does_no_work(self, make_engine, write_prd) -> None:
        """A store with nothing left completes without invoking the agent."""
        write_prd([story("A", 1, passes=True)])
        engine = make_engine()

        result = asyncio.run(engine.run())

        assert result.state == RunState.COMPLETED
        assert result.iterations == 1
        assert engine.runner.call_count == 0

    def test_end_to_end_block_then_continue(self, make_engine, write_prd, store: TaskStore) -> None:
        """A story that never passes is blocked after its retries and the run moves on."""
        write_prd([story("LOW", 2), story("HIGH", 1)])
        selected = []

        def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            document = store.load()
            current = select_next_story(document)
            selected.append(current.id)
            if current.id == "LOW":
                current.passes = True
                store.save(document)
            # HIGH exits zero but never sets passes
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script, max_retries=1, max_iterations=10)
        result = asyncio.run(engine.run())

        assert selected == ["HIGH", "LOW"]
        assert result.state == RunState.COMPLETED
        assert result.blocked == ["HIGH"]
        assert result.stories_passed == ["LOW"]
        assert result.success is False

        document = store.load()
        assert document.find("HIGH").blocked is True
        assert document.find("HIGH").passes is False
        assert document.find("LOW").passes is True

    def test_invocations_bounded_by_max_retries(self, make_engine, write_prd, store: TaskStore) -> None:
        """A failing story gets at most max_retries invocations, then stays blocked."""
        write_prd([story("A", 1)])
        engine = make_engine(script=passing_script(store, fail_ids=("A",)), max_retries=3, max_iterations=20)

        result = asyncio.run(engine.run())

        assert engine.runner.call_count == 3
        assert result.blocked == ["A"]
        assert result.stories_failed == 3
        assert store.load().find("A").blocked is True

    def test_counter_resets_when_story_passes(self, make_engine, write_prd, store: TaskStore) -> None:
        """Passing clears the attempt counter."""
        write_prd([story("A", 1)])

        def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            if call_count == 2:
                document = store.load()
                document.find("A").passes = True
                store.save(document)
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script, max_retries=3)
        result = asyncio.run(engine.run())

        assert result.state == RunState.COMPLETED
        assert engine.attempts["A"] == 0

    def test_retry_prompt_mentions_attempt(self, make_engine, write_prd, store: TaskStore) -> None:
        """The second attempt's prompt carries the retry hint."""
        write_prd([story("A", 1)])
        engine = make_engine(script=passing_script(store, fail_ids=("A",)), max_retries=2)

        asyncio.run(engine.run())

        assert "Retry Attempt" not in engine.runner.prompts[0]
        assert "Retry Attempt 2" in engine.runner.prompts[1]

    def test_nonzero_exit_but_passes_counts_as_passed(self, make_engine, write_prd, store: TaskStore) -> None:
        """The persisted flag decides the outcome, not the exit code."""
        write_prd([story("A", 1)])

        def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            document = store.load()
            document.find("A").passes = True
            store.save(document)
            return ExecutionResult(succeeded=False, exit_code=1)

        result = asyncio.run(make_engine(script=script).run())

        assert result.stories_passed == ["A"]

    def test_executor_error_is_a_failed_attempt(self, make_engine, write_prd, store: TaskStore, progress) -> None:
        """A timeout on one story does not end the run."""
        write_prd([story("A", 1), story("B", 2)])

        def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            document = store.load()
            current = select_next_story(document)
            if current.id == "A":
                raise AgentTimeoutError(
                    "Agent timed out after 1s",
                    ExecutionResult(succeeded=False, timed_out=True, duration_ms=1000),
                )
            current.passes = True
            store.save(document)
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script, max_retries=1)
        result = asyncio.run(engine.run())

        assert result.state == RunState.COMPLETED
        assert result.blocked == ["A"]
        assert result.stories_passed == ["B"]
        assert "timed out" in progress.tail()

    def test_store_error_aborts(self, make_engine, store: TaskStore) -> None:
        """A corrupt task store mid-run is fatal."""

        def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            store.path.write_text("{not json", encoding="utf-8")
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script)
        result = asyncio.run(engine.run())

        assert result.state == RunState.ABORTED
        assert "not valid JSON" in result.error
        assert engine.runner.call_count == 1

    def test_missing_store_aborts_before_invoking(self, make_engine, tmp_path: Path) -> None:
        """No task store means no agent invocation at all."""
        engine = make_engine(engine_store=TaskStore(tmp_path / "missing.json"))

        result = asyncio.run(engine.run())

        assert result.state == RunState.ABORTED
        assert engine.runner.call_count == 0

    def test_exhausted_when_iterations_run_out(self, make_engine, store: TaskStore) -> None:
        """Stories left over at the ceiling end the run as exhausted."""
        engine = make_engine(script=passing_script(store, fail_ids=("US-001",)), max_iterations=2, max_retries=5)

        result = asyncio.run(engine.run())

        assert result.state == RunState.EXHAUSTED
        assert result.iterations == 2
        assert "US-001" in result.remaining
        assert result.success is False

    def test_last_iteration_finishing_everything_completes(self, make_engine, write_prd) -> None:
        """Using the final iteration to finish the last story is a completion."""
        write_prd([story("A", 1)])
        engine = make_engine(max_iterations=1)

        result = asyncio.run(engine.run())

        assert result.state == RunState.COMPLETED

    def test_blocked_stories_persist_across_runs(self, make_engine, write_prd, store: TaskStore) -> None:
        """A blocked story is not retried by the next run unless asked."""
        write_prd([story("A", 1, blocked=True), story("B", 2)])

        result = asyncio.run(make_engine().run())

        assert result.stories_passed == ["B"]
        assert result.blocked == ["A"]

    def test_reset_blocked_retries_them(self, make_engine, write_prd, store: TaskStore) -> None:
        """reset_blocked clears persisted blocked flags at run start."""
        write_prd([story("A", 1, blocked=True)])

        result = asyncio.run(make_engine(reset_blocked=True).run())

        assert result.stories_passed == ["A"]
        assert store.load().find("A").blocked is False

    def test_stop_before_start_aborts(self, make_engine) -> None:
        """A pending stop request aborts before any invocation."""
        control = ControlChannel()
        control.request("stop")
        engine = make_engine(control=control)

        result = asyncio.run(engine.run())

        assert result.state == RunState.ABORTED
        assert engine.runner.call_count == 0

    def test_stop_during_invocation_cancels_it(self, make_engine, store: TaskStore) -> None:
        """A stop request while the agent runs cancels the attempt and aborts the run."""
        control = ControlChannel()
        cancelled = []

        async def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            control.request("stop")
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script, control=control)
        result = asyncio.run(engine.run())

        assert cancelled == [True]
        assert result.state == RunState.ABORTED
        assert engine.runner.call_count == 1
        assert not any(s.passes for s in store.load().stories)

    def test_cancellation_marks_aborted_and_propagates(self, make_engine) -> None:
        """External cancellation kills the attempt, records aborted and re-raises."""

        async def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            await asyncio.sleep(60)
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script, control=ControlChannel())

        async def main() -> None:
            task = asyncio.ensure_future(engine.run())
            while engine.runner.call_count == 0:
                await asyncio.sleep(0.01)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(main())

        assert engine.state == RunState.ABORTED
        assert engine.result is not None
        assert engine.result.error == "interrupted"

    def test_progress_log_records_session_and_attempts(self, make_engine, progress) -> None:
        """Session markers and one line per attempt are appended."""
        asyncio.run(make_engine().run())

        text = progress.path.read_text(encoding="utf-8")
        assert "## Session" in text
        assert text.count("attempt 1: PASSED") == 3
        assert "Session ended: completed" in text

    def test_unknown_fields_survive_blocking(self, make_engine, write_prd, store: TaskStore) -> None:
        """Blocking rewrites the document without dropping agent-written fields."""
        write_prd([story("A", 1, notes="agent scratch")], version=2)
        engine = make_engine(script=passing_script(store, fail_ids=("A",)), max_retries=1)

        asyncio.run(engine.run())

        raw = json.loads(store.path.read_text(encoding="utf-8"))
        assert raw["version"] == 2
        assert raw["stories"][0]["notes"] == "agent scratch"
        assert raw["stories"][0]["blocked"] is True

    def test_broadcaster_sees_story_lifecycle(self, make_engine, broadcaster) -> None:
        """Observers get story_start/story_end and a final loop_complete."""
        events = []
        broadcaster.subscribe(lambda e: events.append(e.type.value))

        asyncio.run(make_engine().run())

        assert events.count("story_start") == 3
        assert events.count("story_end") == 3
        assert events[-1] == "loop_complete"
        assert broadcaster.state.status.value == "complete"

    def test_running_twice_concurrently_is_rejected(self, make_engine) -> None:
        """One engine runs one loop at a time."""

        async def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            await asyncio.sleep(0.05)
            return ExecutionResult(succeeded=True, exit_code=0)

        engine = make_engine(script=script)

        async def main() -> None:
            first = asyncio.ensure_future(engine.run())
            await asyncio.sleep(0)
            with pytest.raises(RuntimeError):
                await engine.run()
            await first

        asyncio.run(main())

    def test_generic_execution_error_continues(self, make_engine, write_prd, store: TaskStore) -> None:
        """Spawn failures and similar are failed attempts, not fatal."""
        write_prd([story("A", 1)])

        def script(prompt: str, selector: str, call_count: int) -> ExecutionResult:
            raise ExecutionError("Could not start claude")

        engine = make_engine(script=script, max_retries=2)
        result = asyncio.run(engine.run())

        assert result.state == RunState.COMPLETED
        assert result.blocked == ["A"]
        assert engine.runner.call_count == 2

    def test_completion_webhook_awaited(self, make_engine, reporter) -> None:
        """The engine posts the completion summary before run() returns."""
        posted = []

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            posted.append(json.loads(request.content))
            return httpx.Response(204)

        reporter.webhook_url = "https://hooks.example.com/loop"
        reporter.http_transport = httpx.MockTransport(handler)
        engine = make_engine()

        result = asyncio.run(engine.run())

        assert result.success is True
        assert [p["state"] for p in posted] == ["completed"]
        assert posted[0]["storiesPassed"] == ["US-001", "US-002", "US-003"]
