"""Progress reporting for the loop.

The engine talks only to a Reporter. It prints to the terminal with
Rich, forwards every event to the observer broadcaster when one is
attached, records the run in the JSON run log, and posts a completion
summary to a webhook if configured. Failures in any of these sinks are
logged and never reach the engine.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .agent_runner import ExecutionResult
from .dashboard.events import EventBroadcaster
from .errors import ExecutionError
from .run_logger import RunLogger
from .task_store import Story, TaskDocument

if TYPE_CHECKING:
    from .loop import LoopResult

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10.0


class Reporter:
    """Fans engine events out to the console, observers, run log and webhook."""

    def __init__(
        self,
        console: Optional[Console] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        run_logger: Optional[RunLogger] = None,
        verbose: bool = False,
        webhook_url: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.console = console or Console()
        self.broadcaster = broadcaster
        self.run_logger = run_logger
        self.verbose = verbose
        self.webhook_url = webhook_url
        self.http_transport = http_transport
        self._last_result: Optional[ExecutionResult] = None

    def start(self, agent: str, max_iterations: int, document: TaskDocument) -> None:
        """Loop started."""
        self.console.print()
        self.console.print(Panel(
            f"[bold]Agent:[/bold] {agent}\n"
            f"[bold]Max iterations:[/bold] {max_iterations}\n"
            f"[bold]Started:[/bold] {datetime.now().strftime('%H:%M:%S')}",
            title=f"LoopShip - {document.project or 'loop'}",
            border_style="blue",
        ))
        if self.broadcaster:
            self.broadcaster.loop_start(document)

    def iteration(self, iteration: int, max_iterations: int) -> None:
        logger.debug(f"Iteration {iteration}/{max_iterations}")
        if self.run_logger:
            self.run_logger.log_iteration(iteration, max_iterations)

    def sync(self, document: TaskDocument) -> None:
        """Push a freshly loaded document to observers."""
        if self.broadcaster:
            self.broadcaster.sync_stories(document)

    def story_start(self, story: Story, iteration: int, attempt: int, remaining: int) -> None:
        lines = [
            f"[bold cyan]Story {story.id}:[/bold cyan] {story.title}",
            f"[dim]Iteration {iteration} | Attempt {attempt} | {remaining} remaining[/dim]",
        ]
        if story.requires_browser:
            lines.append("[dim]Requires browser verification[/dim]")
        self.console.print()
        self.console.print(Panel("\n".join(lines), border_style="cyan", expand=False))

        if self.broadcaster:
            self.broadcaster.story_start(story, iteration, attempt, remaining)
        if self.run_logger:
            self.run_logger.log_attempt_start(story.id, attempt)

    def output(self, text: str, channel: str = "stdout") -> None:
        """Streamed agent output, in arrival order. stdout and stderr are shown alike."""
        if self.verbose:
            self.console.out(text, end="", highlight=False)
        if self.broadcaster:
            self.broadcaster.agent_output(text)

    def agent_error(self, story: Story, error: ExecutionError) -> None:
        self.console.print(f"   [red]Agent error on {story.id}:[/red] {error}")
        if self.broadcaster:
            self.broadcaster.flush_output()
            self.broadcaster.add_output(f"❌ Agent error: {error}", "error")
        if self.run_logger:
            self.run_logger.log_agent_error(str(error), story.id)

    def story_end(self, story: Story, result: ExecutionResult) -> None:
        """Agent invocation finished, before the outcome is known."""
        self._last_result = result
        if self.broadcaster:
            self.broadcaster.flush_output()
        if self.verbose:
            self.console.print()
            self.console.print(f"   [dim]Duration: {result.duration_ms / 1000:.1f}s[/dim]")
            self.console.print(f"   [dim]Exit code: {result.exit_code}[/dim]")

    def story_passed(self, story: Story, duration_ms: int) -> None:
        self.console.print(f"   [green]✓ Story {story.id} PASSED[/green] ({duration_ms / 1000:.1f}s)")
        if self.broadcaster:
            self.broadcaster.story_end(story.id, True, duration_ms)
        self._log_attempt_end(story, True, duration_ms)

    def story_failed(
        self,
        story: Story,
        result: ExecutionResult,
        attempt: int,
        max_retries: int,
    ) -> None:
        self.console.print(f"   [red]✗ Story {story.id} FAILED[/red] (attempt {attempt}/{max_retries})")
        if result.timed_out:
            self.console.print("   [dim]Agent timed out[/dim]")
        elif not result.succeeded and result.exit_code is not None:
            self.console.print(f"   [dim]Agent exited with code {result.exit_code}[/dim]")
        if attempt < max_retries:
            self.console.print("   [dim]Will retry...[/dim]")

        if self.broadcaster:
            self.broadcaster.story_end(story.id, False, result.duration_ms)
        self._log_attempt_end(story, False, result.duration_ms)

    def story_skipped(self, story: Story, reason: str) -> None:
        """Story blocked after too many failed attempts."""
        self.console.print(f"   [yellow]⏭ Skipping story {story.id}:[/yellow] {reason}")
        if self.broadcaster:
            self.broadcaster.add_output(f"⏭️ Skipping story {story.id}: {reason}", "warning")
        if self.run_logger:
            self.run_logger.log_skip(story.id, reason)

    def max_iterations_reached(self, max_iterations: int) -> None:
        self.console.print(f"\n[yellow]Max iterations reached ({max_iterations})[/yellow]")
        self.console.print("[dim]Some stories may need manual intervention. Check progress.txt for details.[/dim]")
        if self.broadcaster:
            self.broadcaster.add_output(f"⚠️ Max iterations reached ({max_iterations})", "warning")

    def error(self, message: str) -> None:
        self.console.print(f"\n[red]Error:[/red] {message}")
        if self.broadcaster:
            self.broadcaster.add_output(f"❌ Error: {message}", "error")
        if self.run_logger:
            self.run_logger.log_error(message)

    def finish(self, result: LoopResult, document: Optional[TaskDocument] = None) -> None:
        """Print the run summary and close out the broadcaster and run log."""
        self.console.print()
        self.console.print(self._summary_panel(result, document))

        if self.broadcaster:
            self.broadcaster.loop_complete(result.success, result.state.value, result.error)
        if self.run_logger:
            self.run_logger.finalize(result.state.value, result.success)

    async def notify(self, result: LoopResult, document: Optional[TaskDocument] = None) -> None:
        """Post the completion webhook, if one is configured."""
        if self.webhook_url:
            await self.send_webhook(result, document)

    async def send_webhook(self, result: LoopResult, document: Optional[TaskDocument] = None) -> bool:
        """POST a JSON completion summary.

        Returns:
            True if the endpoint accepted the notification.
        """
        payload = {
            "event": "loop_complete",
            "project": document.project if document else None,
            "state": result.state.value,
            "success": result.success,
            "iterations": result.iterations,
            "storiesPassed": result.stories_passed,
            "storiesFailed": result.stories_failed,
            "blocked": result.blocked,
            "remaining": result.remaining,
            "completedCount": result.completed_total,
            "totalCount": result.total,
            "durationSeconds": round(result.duration_s, 1),
            "error": result.error,
        }
        try:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT, transport=self.http_transport) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook notification failed: {e}")
            return False
        logger.info(f"Webhook notified: {self.webhook_url}")
        return True

    def _log_attempt_end(self, story: Story, passed: bool, duration_ms: int) -> None:
        if not self.run_logger:
            return
        last = self._last_result
        self.run_logger.log_attempt_end(
            story.id,
            passed,
            exit_code=last.exit_code if last else None,
            duration_ms=duration_ms,
            timed_out=bool(last and last.timed_out),
        )

    @staticmethod
    def _summary_panel(result: LoopResult, document: Optional[TaskDocument]) -> Panel:
        minutes, seconds = divmod(int(result.duration_s), 60)

        table = Table(show_header=False, box=None)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        if document is not None:
            table.add_row("Project", document.project)
        table.add_row("State", result.state.value)
        table.add_row("Iterations", str(result.iterations))
        table.add_row("Stories passed", str(len(result.stories_passed)))
        table.add_row("Failed attempts", str(result.stories_failed))
        table.add_row("Complete", f"{result.completed_total}/{result.total}")
        if result.blocked:
            table.add_row("Blocked", ", ".join(result.blocked))
        if result.remaining:
            table.add_row("Remaining", ", ".join(result.remaining))
        if result.error:
            table.add_row("Error", result.error)
        table.add_row("Total time", f"{minutes}m {seconds}s")

        if result.success:
            title, style = "[bold green]ALL STORIES COMPLETE[/bold green]", "green"
        elif result.state.value == "completed":
            title, style = "[bold yellow]Finished with blocked stories[/bold yellow]", "yellow"
        elif result.state.value == "exhausted":
            title, style = "[bold yellow]MAX ITERATIONS REACHED[/bold yellow]", "yellow"
        else:
            title, style = "[bold red]Loop aborted[/bold red]", "red"
        return Panel(table, title=title, border_style=style)
