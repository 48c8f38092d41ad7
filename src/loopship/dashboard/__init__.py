"""Live observer server for loop progress."""

from .events import (
    Event,
    EventBroadcaster,
    EventType,
    LoopSnapshot,
    RunStatus,
    classify_line,
)
from .server import ConnectionManager, DashboardServer, create_app

__all__ = [
    "ConnectionManager",
    "DashboardServer",
    "Event",
    "EventBroadcaster",
    "EventType",
    "LoopSnapshot",
    "RunStatus",
    "classify_line",
    "create_app",
]
