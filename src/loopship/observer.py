"""Terminal observer for a running loop.

Connects to the broadcast server, hands every decoded message to a
callback and reconnects with exponential backoff (1s doubling up to 30s)
until closed on purpose. An intentional close never schedules a retry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import InvalidURI, WebSocketException

from .errors import TransportError

logger = logging.getLogger(__name__)

INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 30.0
BACKOFF_MULTIPLIER = 2.0


class ReconnectBackoff:
    """Exponential reconnect delay, reset on every successful connection."""

    def __init__(
        self,
        initial: float = INITIAL_RETRY_DELAY,
        multiplier: float = BACKOFF_MULTIPLIER,
        maximum: float = MAX_RETRY_DELAY,
    ):
        self.initial = initial
        self.multiplier = multiplier
        self.maximum = maximum
        self._current = initial

    @property
    def current(self) -> float:
        return self._current

    def next_delay(self) -> float:
        """Delay to wait now; the following one grows by ``multiplier``."""
        delay = self._current
        self._current = min(self._current * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = self.initial


def format_message(message: dict) -> Optional[str]:
    """Render one server message as a Rich markup line, or None to skip it."""
    kind = message.get("type")
    payload = message.get("payload") or {}

    if kind == "output":
        if isinstance(payload, dict) and payload.get("cleared"):
            return "[dim]-- output cleared --[/dim]"
        if isinstance(payload, dict) and "lines" in payload:
            lines = [line.get("text", "") for line in payload["lines"] if isinstance(line, dict)]
            return "\n".join(lines) if lines else None
        return payload.get("text") if isinstance(payload, dict) else None
    if kind == "status":
        return f"[bold]Status:[/bold] {payload.get('status', 'idle')}"
    if kind == "stories":
        done = sum(1 for s in payload if isinstance(s, dict) and s.get("status") == "passed")
        return f"[dim]{done}/{len(payload)} stories passing[/dim]"
    if kind == "story_start":
        return (
            f"[cyan]▶ {payload.get('storyId')}[/cyan] {payload.get('title', '')} "
            f"[dim](iteration {payload.get('iteration')}, attempt {payload.get('attempt')})[/dim]"
        )
    if kind == "story_end":
        verdict = "[green]passed[/green]" if payload.get("passed") else "[red]failed[/red]"
        return f"{payload.get('storyId')} {verdict} ({(payload.get('duration') or 0) / 1000:.1f}s)"
    if kind == "loop_complete":
        if payload.get("success"):
            return "[bold green]Loop complete: all stories passing[/bold green]"
        return f"[bold yellow]Loop ended: {payload.get('state', 'stopped')}[/bold yellow]"
    return None


class ObserverClient:
    """WebSocket client for the broadcast server with automatic reconnect."""

    def __init__(
        self,
        url: str,
        on_message: Callable[[dict], None],
        on_connection_change: Optional[Callable[[bool], None]] = None,
        backoff: Optional[ReconnectBackoff] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        connect: Callable[[str], Any] = websockets.connect,
    ):
        """Initialize the client.

        Args:
            url: Server address, e.g. ws://127.0.0.1:3099.
            on_message: Called with each decoded ``{type, payload}`` message.
            on_connection_change: Called with True on connect, False on loss.
            backoff: Reconnect policy. Defaults to 1s doubling up to 30s.
            sleep: Awaitable sleep, injectable for tests.
            connect: websockets-compatible connect factory.
        """
        self.url = url
        self.on_message = on_message
        self.on_connection_change = on_connection_change
        self.backoff = backoff or ReconnectBackoff()
        self._sleep = sleep
        self._connect = connect
        self._ws: Any = None
        self._closing = False
        self.connected = False

    async def run(self) -> None:
        """Connect and consume messages until ``close()`` is called.

        Raises:
            TransportError: If the URL is not a valid WebSocket address.
        """
        self._closing = False
        while not self._closing:
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    self._set_connected(True)
                    self.backoff.reset()
                    async for raw in ws:
                        self._dispatch(raw)
            except InvalidURI as e:
                raise TransportError(f"Invalid observer URL {self.url}: {e}")
            except (OSError, WebSocketException) as e:
                logger.debug(f"Observer connection lost: {e}")
            finally:
                self._ws = None
                self._set_connected(False)

            if self._closing:
                break
            delay = self.backoff.next_delay()
            logger.info(f"Reconnecting to {self.url} in {delay:g}s")
            await self._sleep(delay)

    async def send(self, kind: str, payload: Any = None) -> bool:
        """Send a control request (start, stop, clear). False if not connected."""
        if self._ws is None:
            return False
        message = {"type": kind}
        if payload is not None:
            message["payload"] = payload
        try:
            await self._ws.send(json.dumps(message))
        except (OSError, WebSocketException) as e:
            logger.warning(f"Could not send {kind!r} to observer server: {e}")
            return False
        return True

    async def close(self) -> None:
        """Close on purpose; no reconnect follows."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    def _set_connected(self, connected: bool) -> None:
        if self.connected == connected:
            return
        self.connected = connected
        if self.on_connection_change is not None:
            self.on_connection_change(connected)

    def _dispatch(self, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring malformed server message: {raw[:100]!r}")
            return
        if not isinstance(message, dict) or "type" not in message:
            return
        try:
            self.on_message(message)
        except Exception as e:
            logger.error(f"Observer message handler failed: {e}")
