"""WebSocket server for live loop observers.

This module provides a FastAPI app with a WebSocket endpoint that
replays the current snapshot to each observer on attach and then streams
every loop event. Inbound observer requests (start, stop, clear) are
handed to a ControlChannel; the server never drives the loop itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from ..control import ControlChannel, ControlSignal
from ..errors import TransportError
from .events import Event, EventBroadcaster

logger = logging.getLogger(__name__)

# Messages buffered per observer before it is considered too slow and dropped.
MAX_PENDING_MESSAGES = 1000


class ObserverConnection:
    """One attached observer: its socket, outbound queue and writer task."""

    def __init__(self, websocket: WebSocket, max_pending: int = MAX_PENDING_MESSAGES) -> None:
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.writer: Optional[asyncio.Task] = None


class ConnectionManager:
    """Manages WebSocket connections.

    Broadcasting only enqueues; each connection has its own writer task,
    so a slow observer never delays the loop or other observers.
    """

    def __init__(self, broadcaster: EventBroadcaster, max_pending: int = MAX_PENDING_MESSAGES) -> None:
        self.broadcaster = broadcaster
        self.max_pending = max_pending
        self.active_connections: List[ObserverConnection] = []
        broadcaster.subscribe(self.broadcast)

    async def connect(self, websocket: WebSocket) -> ObserverConnection:
        """Accept a new WebSocket connection and queue the snapshot replay."""
        await websocket.accept()
        conn = ObserverConnection(websocket, self.max_pending)

        # Snapshot and registration happen without yielding, so no event
        # published in between can be lost or duplicated.
        for message in self.broadcaster.snapshot_messages():
            conn.queue.put_nowait(json.dumps(message, ensure_ascii=False))
        self.active_connections.append(conn)
        conn.writer = asyncio.create_task(self._write_loop(conn))

        logger.info(f"Observer connected. Total observers: {len(self.active_connections)}")
        return conn

    def disconnect(self, conn: ObserverConnection) -> None:
        """Remove a connection from the fan-out set."""
        if conn not in self.active_connections:
            return
        self.active_connections.remove(conn)
        if conn.writer is not None and conn.writer is not asyncio.current_task():
            conn.writer.cancel()
        logger.info(f"Observer disconnected. Total observers: {len(self.active_connections)}")

    def broadcast(self, event: Event) -> None:
        """Queue an event for every connected observer."""
        if not self.active_connections:
            return

        message = event.to_json()
        for conn in list(self.active_connections):
            try:
                conn.queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Observer is not keeping up, dropping connection")
                self.disconnect(conn)
                asyncio.ensure_future(self._close(conn))

    async def close_all(self) -> None:
        """Close every observer connection."""
        for conn in list(self.active_connections):
            self.disconnect(conn)
            await self._close(conn)

    async def _write_loop(self, conn: ObserverConnection) -> None:
        try:
            while True:
                message = await conn.queue.get()
                await conn.websocket.send_text(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to send to observer: {e}")
            self.disconnect(conn)

    @staticmethod
    async def _close(conn: ObserverConnection) -> None:
        try:
            await conn.websocket.close(code=1001)
        except Exception as e:
            logger.debug(f"Observer close failed: {e}")


def handle_message(data: str, broadcaster: EventBroadcaster, control: ControlChannel) -> Optional[ControlSignal]:
    """Apply one inbound observer message. Unknown or malformed messages are ignored."""
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Ignoring malformed observer message: {data[:100]!r}")
        return None
    if not isinstance(message, dict):
        return None

    signal = control.request(str(message.get("type", "")))
    if signal is None:
        logger.debug(f"Ignoring unknown observer message type: {message.get('type')!r}")
    elif signal is ControlSignal.CLEAR:
        broadcaster.clear_output()
    return signal


def create_app(
    broadcaster: EventBroadcaster,
    control: ControlChannel,
    manager: Optional[ConnectionManager] = None,
) -> FastAPI:
    """Build the observer app around an explicit broadcaster and control channel."""
    app = FastAPI(title="LoopShip Observer")
    manager = manager or ConnectionManager(broadcaster)
    app.state.manager = manager
    app.state.broadcaster = broadcaster
    app.state.control = control

    @app.get("/api/state")
    async def get_state() -> dict:
        """Get current loop snapshot."""
        return broadcaster.state.to_dict()

    @app.websocket("/")
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """WebSocket endpoint for live updates and control requests."""
        conn = await manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
                    continue
                handle_message(data, broadcaster, control)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning(f"Observer connection error: {e}")
        finally:
            manager.disconnect(conn)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the embedding process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class DashboardServer:
    """Runs the observer app on the current event loop."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        control: ControlChannel,
        host: str = "127.0.0.1",
        port: int = 3099,
    ) -> None:
        self.host = host
        self.port = port
        self.app = create_app(broadcaster, control)
        self.manager: ConnectionManager = self.app.state.manager
        config = uvicorn.Config(self.app, host=host, port=port, log_level="warning", lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> None:
        """Start serving and wait until the socket is bound.

        Raises:
            TransportError: If the server could not bind (e.g. port in use).
        """
        self._task = asyncio.create_task(self._serve())
        while not self._server.started:
            if self._task.done():
                raise TransportError(f"Could not start observer server on {self.host}:{self.port}")
            await asyncio.sleep(0.05)
        logger.info(f"Observer server running on {self.url}")

    async def stop(self) -> None:
        """Close all observers, then shut the server down."""
        await self.manager.close_all()
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("Observer server stopped")

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn exits the process when it cannot bind; keep that local.
            logger.error(f"Port {self.port} could not be bound")
