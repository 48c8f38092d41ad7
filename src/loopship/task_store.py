"""Task store for the iteration loop.

The task store is a single JSON document (``prd.json``) holding the
project context and the ordered list of stories. The document is always
read and written as a whole: callers load it, mutate the in-memory copy
and save the entire document back. The agent process edits the same file
between engine writes, so nothing here is ever cached.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "prd.json"

# Keys owned by Story; anything else in a story object is carried in ``extra``.
_STORY_KEYS = {
    "id",
    "title",
    "description",
    "priority",
    "acceptance",
    "acceptanceCriteria",
    "requiresBrowser",
    "verifyUrl",
    "passes",
    "blocked",
}
_DOCUMENT_KEYS = {"project", "branchName", "description", "stories"}


def _flag(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise StoreReadError(f"Story {data['id']}: {key!r} must be true or false, got {value!r}")
    return value


@dataclass
class Story:
    """A single unit of work with acceptance criteria."""

    id: str
    title: str
    description: str = ""
    priority: int = 0
    acceptance: List[str] = field(default_factory=list)
    requires_browser: bool = False
    verify_url: Optional[str] = None
    passes: bool = False
    blocked: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_candidate(self) -> bool:
        """True if the story still needs work in this run."""
        return not self.passes and not self.blocked

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        d.update({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "acceptance": list(self.acceptance),
            "requiresBrowser": self.requires_browser,
            "passes": self.passes,
            "blocked": self.blocked,
        })
        if self.verify_url is not None:
            d["verifyUrl"] = self.verify_url
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Story:
        if not isinstance(data, dict):
            raise StoreReadError(f"Story entry must be an object, got {type(data).__name__}")
        if "id" not in data or data["id"] in (None, ""):
            raise StoreReadError(f"Story is missing an id: {data.get('title', data)!r}")

        acceptance = data.get("acceptance", data.get("acceptanceCriteria", []))
        if not isinstance(acceptance, list):
            raise StoreReadError(f"Story {data['id']}: acceptance criteria must be a list")

        try:
            priority = int(data.get("priority", 0))
        except (TypeError, ValueError):
            raise StoreReadError(f"Story {data['id']}: priority must be an integer")

        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            priority=priority,
            acceptance=[str(c) for c in acceptance],
            requires_browser=_flag(data, "requiresBrowser"),
            verify_url=data.get("verifyUrl"),
            passes=_flag(data, "passes"),
            blocked=_flag(data, "blocked"),
            extra={k: v for k, v in data.items() if k not in _STORY_KEYS},
        )


@dataclass
class TaskDocument:
    """The whole task store document."""

    project: str = ""
    branch_name: str = ""
    description: str = ""
    stories: List[Story] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def find(self, story_id: str) -> Optional[Story]:
        """Return the story with ``story_id`` or None."""
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    @property
    def candidates(self) -> List[Story]:
        """Stories that are neither passing nor blocked, in list order."""
        return [s for s in self.stories if s.is_candidate]

    @property
    def passed(self) -> List[Story]:
        return [s for s in self.stories if s.passes]

    @property
    def blocked(self) -> List[Story]:
        return [s for s in self.stories if s.blocked and not s.passes]

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        d.update({
            "project": self.project,
            "branchName": self.branch_name,
            "description": self.description,
            "stories": [s.to_dict() for s in self.stories],
        })
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskDocument:
        if not isinstance(data, dict):
            raise StoreReadError("Task document must be a JSON object")
        stories_data = data.get("stories")
        if not isinstance(stories_data, list):
            raise StoreReadError("Invalid task document: missing 'stories' array")

        stories = [Story.from_dict(s) for s in stories_data]
        seen = set()
        for story in stories:
            if story.id in seen:
                raise StoreReadError(f"Duplicate story id: {story.id}")
            seen.add(story.id)

        return cls(
            project=str(data.get("project", "")),
            branch_name=str(data.get("branchName", "")),
            description=str(data.get("description", "")),
            stories=stories,
            extra={k: v for k, v in data.items() if k not in _DOCUMENT_KEYS},
        )


class TaskStore:
    """Loads and saves the task document as a whole.

    Writers are not coordinated: the engine only writes between agent
    invocations, and the agent is the only other writer.
    """

    def __init__(self, path: Optional[Path] = None):
        """Initialize the task store.

        Args:
            path: Path to the JSON document. Defaults to prd.json in CWD.
        """
        self.path = Path(path) if path else Path.cwd() / DEFAULT_FILENAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> TaskDocument:
        """Read the document fresh from disk.

        Raises:
            StoreReadError: If the file is missing, unreadable or malformed.
        """
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StoreReadError(f"Task store not found: {self.path}")
        except json.JSONDecodeError as e:
            raise StoreReadError(f"Task store is not valid JSON ({self.path}): {e}")
        except OSError as e:
            raise StoreReadError(f"Could not read task store {self.path}: {e}")

        return TaskDocument.from_dict(data)

    def save(self, document: TaskDocument) -> None:
        """Write the whole document back to disk.

        The write goes to a temp file in the same directory which then
        replaces the store, so readers never observe a half-written file.

        Raises:
            StoreWriteError: On any I/O failure.
        """
        payload = json.dumps(document.to_dict(), indent=2, ensure_ascii=False) + "\n"
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
            tmp_path = None
            logger.debug(f"Saved task store to {self.path}")
        except OSError as e:
            raise StoreWriteError(f"Could not write task store {self.path}: {e}")
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def set_blocked(self, story_id: str, blocked: bool = True) -> TaskDocument:
        """Load, flip one story's blocked flag, and save.

        Returns:
            The document as written.

        Raises:
            StoreReadError: If the story does not exist.
        """
        document = self.load()
        story = document.find(story_id)
        if story is None:
            raise StoreReadError(f"Story {story_id} not found in {self.path}")
        story.blocked = blocked
        self.save(document)
        return document

    def clear_blocked(self) -> int:
        """Reset every blocked flag. Returns the number of stories changed."""
        document = self.load()
        changed = 0
        for story in document.stories:
            if story.blocked:
                story.blocked = False
                changed += 1
        if changed:
            self.save(document)
        return changed
