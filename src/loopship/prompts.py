"""Prompt assembly for a single story attempt.

Prompts are Jinja2 templates. The built-in template can be replaced per
repository (``prompt_template`` in loopship.yaml); custom templates see
the same variables as the default one.
"""

from __future__ import annotations

from typing import Optional

from jinja2 import Template, TemplateError

from .errors import ConfigurationError
from .progress_log import DEFAULT_FILENAME as PROGRESS_FILENAME
from .task_store import DEFAULT_FILENAME as STORE_FILENAME
from .task_store import Story, TaskDocument

DEFAULT_VERIFY_URL = "http://localhost:5173"

STORY_TEMPLATE = """\
# LoopShip - Story Implementation

You are implementing a single story from a PRD. Complete this story, then stop.

## Project Context

**Project:** {{ project.project }}
**Branch:** {{ project.branch_name }}
**Description:** {{ project.description }}

## Current Story

**ID:** {{ story.id }}
**Title:** {{ story.title }}
**Description:** {{ story.description }}
**Priority:** {{ story.priority }}

### Acceptance Criteria
{% for criterion in story.acceptance %}
{{ loop.index }}. {{ criterion }}
{% else %}
(none listed)
{% endfor %}
{% if story.requires_browser %}

## Browser Verification Required

This story requires visual verification. After implementing:

1. Start the dev server if it is not already running.
2. Open {{ verify_url }} and take a screenshot named story-{{ story.id }}.png.
3. Check the screenshot against the acceptance criteria.
4. Only mark the story as done after the visual check passes.

Do NOT mark a browser-verified story as passing without reviewing a screenshot.
{% endif %}
{% if attempt > 1 %}

## Retry Attempt {{ attempt }}

The previous attempt did not complete this story. Check {{ progress_file }} for error details before starting.
{% endif %}

## Instructions

1. **Implement the story** - write the necessary code
2. **Verify it works:**
   - Run the project's tests if they exist
   - Run the type checker if the project has one
{% if story.requires_browser %}
   - Take a browser screenshot and verify the UI
{% endif %}
3. **If successful:**
   - Commit with message: `feat: {{ story.title }}`
   - Update {{ store_file }}: set story {{ story.id }} `passes: true`
   - Add a brief note to {{ progress_file }} about what you learned
4. **If it fails:**
   - Add error details to {{ progress_file }}
   - Do NOT set passes: true

## Files to Update

- **{{ store_file }}** - Mark story as passing when done
- **{{ progress_file }}** - Log what you did and any learnings

## Recent Progress

{{ progress or "(No progress yet)" }}

---

Begin implementing story {{ story.id }}: "{{ story.title }}"
"""


def build_story_prompt(
    document: TaskDocument,
    story: Story,
    progress_excerpt: str = "",
    attempt: int = 1,
    store_filename: Optional[str] = None,
    template: Optional[str] = None,
) -> str:
    """Build the agent prompt for one attempt at ``story``.

    Args:
        document: Freshly loaded task document (project context).
        story: The selected story.
        progress_excerpt: Trailing lines of the progress log.
        attempt: 1-based attempt number for this story in the current run.
        store_filename: Name of the task store file the agent must update.
        template: Jinja2 template text replacing the built-in one.

    Returns:
        The full prompt text.

    Raises:
        ConfigurationError: If a custom template cannot be rendered.
    """
    try:
        return Template(template or STORY_TEMPLATE, trim_blocks=True, keep_trailing_newline=True).render(
            project=document,
            story=story,
            attempt=attempt,
            progress=progress_excerpt,
            verify_url=story.verify_url or DEFAULT_VERIFY_URL,
            store_file=store_filename or STORE_FILENAME,
            progress_file=PROGRESS_FILENAME,
        )
    except TemplateError as e:
        raise ConfigurationError(f"Prompt template error: {e}")
