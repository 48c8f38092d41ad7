"""Error taxonomy for the LoopShip iteration loop.

Errors are grouped by how far their damage reaches:

- ConfigurationError: bad startup options; nothing has run yet.
- StoreError: the task store cannot be trusted; the run must abort.
- ExecutionError: one agent invocation went wrong; the attempt counts
  as failed and the loop moves on.
- TransportError: an observer connection or the broadcast server
  misbehaved; the loop itself is never affected.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .agent_runner import ExecutionResult


class LoopShipError(Exception):
    """Base exception for all LoopShip errors."""

    pass


class ConfigurationError(LoopShipError):
    """Raised for unknown agent selectors or malformed startup options."""

    pass


class StoreError(LoopShipError):
    """Raised when the task store cannot be read or written."""

    pass


class StoreReadError(StoreError):
    """Task store is missing, unreadable or malformed."""

    pass


class StoreWriteError(StoreError):
    """Task store could not be written back to disk."""

    pass


class ExecutionError(LoopShipError):
    """Raised when an agent invocation fails to run to completion."""

    def __init__(self, message: str, result: Optional[ExecutionResult] = None):
        super().__init__(message)
        self.result = result


class AgentSpawnError(ExecutionError):
    """The agent process could not be started."""

    pass


class AgentTimeoutError(ExecutionError):
    """The agent process exceeded its wall-clock budget and was killed."""

    pass


class TransportError(LoopShipError):
    """Raised for observer connection or broadcast server failures."""

    pass
