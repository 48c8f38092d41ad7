"""CLI entrypoint for LoopShip.

Commands operate on a target repository holding ``prd.json`` (the task
store) and ``progress.txt`` (the progress log). ``run`` drives the agent
loop; ``status``, ``agents`` and ``watch`` only inspect.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .agent_runner import AgentRunner
from .config import LoopConfig
from .control import ControlChannel
from .dashboard import DashboardServer, EventBroadcaster
from .errors import ConfigurationError, StoreError, TransportError
from .loop import IterationEngine, LoopResult
from .observer import ObserverClient, format_message
from .progress_log import ProgressLog
from .prompts import DEFAULT_VERIFY_URL, build_story_prompt
from .reporter import Reporter
from .run_logger import RunLogger
from .task_store import TaskDocument, TaskStore

# Initialize Typer app
app = typer.Typer(
    name="loopship",
    help="Run a coding agent story by story until a PRD is done.",
    add_completion=False,
)

console = Console()

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"loopship version {__version__}")
        raise typer.Exit()


def _flag(value: bool) -> Optional[bool]:
    """Unset boolean flags defer to the config file."""
    return True if value else None


def _story_icon(story) -> str:
    if story.passes:
        return "[green]✓[/green]"
    if story.blocked:
        return "[red]⊘[/red]"
    return "[dim]○[/dim]"


def _print_stories(document: TaskDocument) -> None:
    console.print(f"[bold]Stories ({len(document.passed)}/{len(document.stories)} complete):[/bold]")
    for story in sorted(document.stories, key=lambda s: s.priority):
        browser = " [dim](browser)[/dim]" if story.requires_browser else ""
        console.print(f"  {_story_icon(story)} {story.id}: {story.title}{browser}")
    console.print()


def _load_config(repo: Path, **overrides) -> LoopConfig:
    repo_path = repo.resolve()
    if not repo_path.exists():
        console.print(f"[red]Error:[/red] Target repository does not exist: {repo_path}")
        raise typer.Exit(1)
    try:
        config = LoopConfig.from_env(repo_path).merge(**overrides)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)
    return config


def _load_document(store: TaskStore) -> TaskDocument:
    try:
        return store.load()
    except StoreError as e:
        console.print(f"[red]Error:[/red] Could not load {store.path.name}: {e}")
        console.print(f"[dim]Create a {store.path.name} with a 'stories' array first.[/dim]")
        raise typer.Exit(1)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """LoopShip: autonomous agent loop over a PRD."""
    pass


@app.command()
def run(
    agent: Optional[str] = typer.Option(
        None,
        "--agent",
        "-a",
        help="Agent to use (claude, codex, or one configured in loopship.yaml).",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Maximum loop iterations (default: 25).",
    ),
    max_retries: Optional[int] = typer.Option(
        None,
        "--max-retries",
        help="Attempts per story before it is blocked (default: 3).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Timeout per attempt in minutes (default: 10).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show agent output in real time and enable debug logging.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would run without invoking the agent.",
    ),
    webhook: Optional[str] = typer.Option(
        None,
        "--webhook",
        help="POST a JSON completion summary to this URL.",
    ),
    ui: bool = typer.Option(
        False,
        "--ui",
        help="Start the live observer server.",
    ),
    ui_port: Optional[int] = typer.Option(
        None,
        "--ui-port",
        help="Observer server port (default: 3099).",
    ),
    ui_host: Optional[str] = typer.Option(
        None,
        "--ui-host",
        help="Observer server bind address (default: 127.0.0.1).",
    ),
    wait_for_start: bool = typer.Option(
        False,
        "--wait-for-start",
        help="With --ui: stay idle until an observer sends start.",
    ),
    retry_blocked: bool = typer.Option(
        False,
        "--retry-blocked",
        help="Clear blocked flags from previous runs before starting.",
    ),
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the target repository.",
    ),
) -> None:
    """Run the loop until every story passes or iterations run out."""
    setup_logging(verbose)

    config = _load_config(
        repo,
        agent=agent,
        max_iterations=max_iterations,
        max_retries=max_retries,
        timeout_minutes=timeout,
        verbose=_flag(verbose),
        dry_run=_flag(dry_run),
        webhook=webhook,
        ui=_flag(ui),
        ui_port=ui_port,
        ui_host=ui_host,
        wait_for_start=_flag(wait_for_start),
        retry_blocked=_flag(retry_blocked),
    )

    console.print("\n[bold]LoopShip Run[/bold]")
    console.print(f"[dim]Target repo:[/dim] {config.repo_path}")
    console.print(f"[dim]Agent:[/dim] {config.agent}")
    console.print(f"[dim]Max iterations:[/dim] {config.max_iterations}")
    console.print(f"[dim]Max retries:[/dim] {config.max_retries}")
    console.print(f"[dim]Timeout:[/dim] {config.timeout_minutes:g} min")
    if config.webhook:
        console.print(f"[dim]Webhook:[/dim] {config.webhook}")
    console.print()

    runner = AgentRunner(agents=config.agents)
    if not config.dry_run and not runner.is_available(config.agent):
        spec = runner.resolve(config.agent)
        console.print(f"[red]Error:[/red] Agent '{config.agent}' not found in PATH ({spec.command})")
        for other in runner.agents.values():
            if other.install_hint:
                console.print(f"[dim]  Install {other.name}: {other.install_hint}[/dim]")
        raise typer.Exit(1)

    store = TaskStore(config.prd_path)
    document = _load_document(store)
    console.print(f"[bold]Project:[/bold] {document.project}")
    if document.branch_name:
        console.print(f"[bold]Branch:[/bold] {document.branch_name}")
    console.print()
    _print_stories(document)

    if not document.candidates:
        if document.blocked and not config.retry_blocked:
            ids = ", ".join(s.id for s in document.blocked)
            console.print(f"[yellow]No runnable stories. Blocked: {ids}[/yellow]")
            console.print("[dim]Use --retry-blocked to try them again.[/dim]")
            raise typer.Exit(1)
        if not document.blocked:
            console.print("[green]All stories already complete![/green]")
            return

    progress = ProgressLog(config.progress_path)
    if not config.dry_run and progress.ensure_exists(document.project):
        console.print(f"[dim]Created {progress.path.name}[/dim]")

    if config.dry_run:
        _dry_run(document, store, progress, config)
        return

    try:
        result = asyncio.run(_run_loop(config, runner, store, progress))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(130)
    except (TransportError, ConfigurationError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except StoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if result is None or not result.success:
        raise typer.Exit(1)


def _dry_run(document: TaskDocument, store: TaskStore, progress: ProgressLog, config: LoopConfig) -> None:
    console.print("[bold yellow]*** DRY RUN: the agent will not be invoked. ***[/bold yellow]\n")
    remaining = [s for s in document.stories if not s.passes and (config.retry_blocked or not s.blocked)]
    # sorted() is stable, so equal priorities keep document order
    remaining = sorted(remaining, key=lambda s: s.priority)
    if not remaining:
        return

    console.print("[bold]Would execute:[/bold]")
    for candidate in remaining:
        console.print(f"  {candidate.id}: {candidate.title}", markup=False, highlight=False)
        console.print(f"    [dim]-> {config.agent} would implement this[/dim]")
        if candidate.requires_browser:
            target = candidate.verify_url or DEFAULT_VERIFY_URL
            console.print(f"    [dim]-> browser would verify: {target}[/dim]")
    console.print()

    story = remaining[0]
    prompt = build_story_prompt(
        document,
        story,
        progress_excerpt=progress.tail(config.progress_tail_lines),
        store_filename=store.path.name,
        template=config.load_prompt_template(),
    )
    argv = " ".join(AgentRunner(agents=config.agents).resolve(config.agent).argv)
    console.print(f"[dim]Next story:[/dim] {story.id}: {story.title}")
    console.print(f"[dim]Command:[/dim] {argv}")
    console.print(f"[dim]Prompt length:[/dim] {len(prompt)} characters")
    if config.verbose:
        console.print()
        console.print(prompt, markup=False, highlight=False)


async def _run_loop(
    config: LoopConfig,
    runner: AgentRunner,
    store: TaskStore,
    progress: ProgressLog,
) -> Optional[LoopResult]:
    """Run the engine, plus the observer server when enabled, on one event loop."""
    broadcaster = EventBroadcaster() if config.ui else None
    control = ControlChannel()
    run_logger = RunLogger(config.log_path, project=store.load().project, agent=config.agent)
    reporter = Reporter(
        console=console,
        broadcaster=broadcaster,
        run_logger=run_logger,
        verbose=config.verbose,
        webhook_url=config.webhook,
    )
    engine = IterationEngine(store, runner, progress, reporter, config.engine_settings(), control=control)

    server: Optional[DashboardServer] = None
    try:
        if broadcaster is not None:
            server = DashboardServer(broadcaster, control, config.ui_host, config.ui_port)
            await server.start()
            console.print(f"[bold cyan]Observer server:[/bold cyan] {server.url}\n")
            if config.wait_for_start:
                broadcaster.sync_stories(store.load())
                console.print("[dim]Waiting for an observer to send start... (Ctrl+C to quit)[/dim]")
                await control.wait_for_start()

        console.print("[bold]Starting loop...[/bold] [dim](Ctrl+C to stop)[/dim]")
        task = asyncio.ensure_future(engine.run())
        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop, task)
        try:
            return await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            console.print("\n[yellow]Shutting down...[/yellow]")
            return engine.result
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
    finally:
        if server is not None:
            await server.stop()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, task: asyncio.Future) -> list:
    """Route SIGINT/SIGTERM to cancelling the engine so the agent gets killed cleanly."""
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
    return installed


@app.command()
def status(
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the target repository.",
    ),
) -> None:
    """Show the stories in the task store and their state."""
    config = _load_config(repo)
    document = _load_document(TaskStore(config.prd_path))

    console.print(f"\n[bold cyan]{document.project}[/bold cyan]")
    if document.description:
        console.print(f"[dim]{document.description}[/dim]")
    console.print()

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("ID", style="dim", width=8)
    table.add_column("Title", width=40)
    table.add_column("Priority", width=8)
    table.add_column("Status", width=10)
    for story in sorted(document.stories, key=lambda s: s.priority):
        if story.passes:
            state = "[green]passed[/green]"
        elif story.blocked:
            state = "[red]blocked[/red]"
        else:
            state = "[yellow]pending[/yellow]"
        table.add_row(story.id, story.title, str(story.priority), state)
    console.print(table)
    console.print(
        f"\n{len(document.passed)}/{len(document.stories)} complete, "
        f"{len(document.blocked)} blocked, {len(document.candidates)} remaining"
    )


@app.command()
def agents(
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the target repository (for loopship.yaml).",
    ),
) -> None:
    """List configured agents and whether they are installed."""
    config = _load_config(repo)
    runner = AgentRunner(agents=config.agents)

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Selector", width=10)
    table.add_column("Name", width=16)
    table.add_column("Command", width=44)
    table.add_column("Status", width=12)
    for key, spec in sorted(runner.agents.items()):
        if runner.is_available(key):
            state = "[green]available[/green]"
        else:
            state = "[red]missing[/red]"
        table.add_row(key, spec.name, " ".join(spec.argv), state)
    console.print(table)

    missing = [spec for key, spec in runner.agents.items() if not runner.is_available(key) and spec.install_hint]
    for spec in missing:
        console.print(f"[dim]Install {spec.name}: {spec.install_hint}[/dim]")


@app.command()
def watch(
    url: str = typer.Option(
        "ws://127.0.0.1:3099",
        "--url",
        "-u",
        help="Observer server address.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
) -> None:
    """Follow a running loop from another terminal."""
    setup_logging(verbose)

    def on_message(message: dict) -> None:
        line = format_message(message)
        if line is not None:
            console.print(line)

    def on_connection_change(connected: bool) -> None:
        if connected:
            console.print(f"[green]Connected to {url}[/green]")
        else:
            console.print("[yellow]Disconnected, reconnecting...[/yellow]")

    client = ObserverClient(url, on_message, on_connection_change)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped watching.[/dim]")
    except TransportError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
