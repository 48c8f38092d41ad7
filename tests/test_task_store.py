"""Tests for the task store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import make_prd, story
from loopship.errors import StoreReadError, StoreWriteError
from loopship.task_store import Story, TaskDocument, TaskStore


class TestStory:
    """Tests for Story parsing."""

    def test_from_dict_reads_json_keys(self) -> None:
        """camelCase keys map onto the dataclass fields."""
        parsed = Story.from_dict(story("US-1", 2, requiresBrowser=True, verifyUrl="http://localhost:3000"))

        assert parsed.id == "US-1"
        assert parsed.priority == 2
        assert parsed.acceptance == ["US-1 works", "Tests pass"]
        assert parsed.requires_browser is True
        assert parsed.verify_url == "http://localhost:3000"
        assert parsed.is_candidate is True

    def test_acceptance_criteria_alias(self) -> None:
        """acceptanceCriteria is accepted in place of acceptance."""
        parsed = Story.from_dict({"id": "A", "title": "t", "acceptanceCriteria": ["one"]})

        assert parsed.acceptance == ["one"]

    def test_missing_id_rejected(self) -> None:
        """Every story needs an id."""
        with pytest.raises(StoreReadError):
            Story.from_dict({"title": "No id"})

    def test_bad_priority_rejected(self) -> None:
        """Priority must be an integer."""
        with pytest.raises(StoreReadError):
            Story.from_dict({"id": "A", "priority": "high"})

    @pytest.mark.parametrize("key", ["passes", "blocked", "requiresBrowser"])
    @pytest.mark.parametrize("value", ["false", "true", 0, 1, None])
    def test_non_boolean_flags_rejected(self, key: str, value) -> None:
        """Status flags must be JSON booleans; "false" is not quietly read as true."""
        with pytest.raises(StoreReadError, match=f"'{key}' must be true or false"):
            Story.from_dict(story("A", 1, **{key: value}))

    def test_missing_flags_default_to_false(self) -> None:
        parsed = Story.from_dict({"id": "A", "title": "t"})

        assert (parsed.passes, parsed.blocked, parsed.requires_browser) == (False, False, False)

    def test_to_dict_keeps_unknown_keys(self) -> None:
        """Fields the engine does not know survive a round trip."""
        parsed = Story.from_dict(story("A", 1, notes="keep me"))

        assert parsed.to_dict()["notes"] == "keep me"

    def test_blocked_is_not_a_candidate(self) -> None:
        """Blocked and passing stories are out of the running."""
        assert Story(id="A", title="t", blocked=True).is_candidate is False
        assert Story(id="A", title="t", passes=True).is_candidate is False


class TestTaskDocument:
    """Tests for TaskDocument parsing."""

    def test_missing_stories_rejected(self) -> None:
        """A document without a stories array is malformed."""
        with pytest.raises(StoreReadError, match="stories"):
            TaskDocument.from_dict({"project": "x"})

    def test_duplicate_ids_rejected(self) -> None:
        """Story ids must be unique."""
        with pytest.raises(StoreReadError, match="Duplicate"):
            TaskDocument.from_dict(make_prd([story("A", 1), story("A", 2)]))

    def test_views(self) -> None:
        """candidates, passed and blocked partition the stories."""
        document = TaskDocument.from_dict(make_prd([
            story("A", 1, passes=True),
            story("B", 2, blocked=True),
            story("C", 3),
        ]))

        assert [s.id for s in document.candidates] == ["C"]
        assert [s.id for s in document.passed] == ["A"]
        assert [s.id for s in document.blocked] == ["B"]
        assert document.find("B").title == "Story B"
        assert document.find("Z") is None


class TestTaskStore:
    """Tests for TaskStore load/save."""

    def test_load(self, store: TaskStore) -> None:
        """The sample document loads with all its stories."""
        document = store.load()

        assert document.project == "Todo App"
        assert document.branch_name == "feature/todo"
        assert [s.id for s in document.stories] == ["US-001", "US-002", "US-003"]

    def test_load_missing_file(self, tmp_path: Path) -> None:
        """A missing file is a read error."""
        with pytest.raises(StoreReadError, match="not found"):
            TaskStore(tmp_path / "prd.json").load()

    def test_load_invalid_json(self, tmp_path: Path) -> None:
        """Unparseable JSON is a read error."""
        path = tmp_path / "prd.json"
        path.write_text("{oops", encoding="utf-8")

        with pytest.raises(StoreReadError, match="not valid JSON"):
            TaskStore(path).load()

    def test_load_rejects_string_passes(self, tmp_path: Path) -> None:
        """A hand-edited "passes": "false" fails the load instead of counting as done."""
        path = tmp_path / "prd.json"
        path.write_text(json.dumps(make_prd([story("A", 1, passes="false")])), encoding="utf-8")

        with pytest.raises(StoreReadError, match="Story A: 'passes' must be true or false"):
            TaskStore(path).load()

    def test_load_is_never_cached(self, store: TaskStore) -> None:
        """External edits are visible on the next load."""
        store.load()
        data = json.loads(store.path.read_text(encoding="utf-8"))
        data["stories"][0]["passes"] = True
        store.path.write_text(json.dumps(data), encoding="utf-8")

        assert store.load().find("US-001").passes is True

    def test_save_writes_whole_document(self, store: TaskStore) -> None:
        """Saving preserves unknown top-level keys and writes indented JSON."""
        data = json.loads(store.path.read_text(encoding="utf-8"))
        data["version"] = 3
        store.path.write_text(json.dumps(data), encoding="utf-8")

        document = store.load()
        document.find("US-002").passes = True
        store.save(document)

        raw = store.path.read_text(encoding="utf-8")
        assert raw.startswith("{\n  ")
        saved = json.loads(raw)
        assert saved["version"] == 3
        assert saved["stories"][1]["passes"] is True
        assert saved["branchName"] == "feature/todo"

    def test_save_leaves_no_temp_files(self, store: TaskStore) -> None:
        """The atomic write cleans up after itself."""
        store.save(store.load())

        assert [p.name for p in store.path.parent.iterdir() if p.name.endswith(".tmp")] == []

    def test_save_to_missing_directory_fails(self, tmp_path: Path, store: TaskStore) -> None:
        """I/O failures surface as StoreWriteError."""
        document = store.load()
        target = TaskStore(tmp_path / "missing" / "prd.json")

        with pytest.raises(StoreWriteError):
            target.save(document)

    def test_set_blocked(self, store: TaskStore) -> None:
        """set_blocked persists immediately."""
        store.set_blocked("US-002")

        assert store.load().find("US-002").blocked is True

    def test_set_blocked_unknown_story(self, store: TaskStore) -> None:
        """Blocking a story that does not exist is an error."""
        with pytest.raises(StoreReadError):
            store.set_blocked("nope")

    def test_clear_blocked(self, write_prd, store: TaskStore) -> None:
        """clear_blocked resets every blocked flag and reports how many."""
        write_prd([story("A", 1, blocked=True), story("B", 2, blocked=True), story("C", 3)])

        assert store.clear_blocked() == 2
        assert store.load().blocked == []
        assert store.clear_blocked() == 0
