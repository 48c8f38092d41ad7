"""Named control signals raised by observers.

The broadcast server never starts or stops the engine itself. It turns
inbound observer requests into signals on a ControlChannel, and whoever
embeds the engine decides what to do with them.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ControlSignal(str, Enum):
    """Requests an observer may send."""

    START = "start"
    STOP = "stop"
    CLEAR = "clear"


class ControlChannel:
    """Latching start/stop flags plus listener callbacks per signal."""

    def __init__(self) -> None:
        self._start = asyncio.Event()
        self._stop = asyncio.Event()
        self._listeners: Dict[ControlSignal, List[Callable[[], None]]] = {}

    @property
    def start_requested(self) -> bool:
        return self._start.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def on(self, signal: ControlSignal, callback: Callable[[], None]) -> None:
        """Register a callback fired every time ``signal`` is requested."""
        self._listeners.setdefault(signal, []).append(callback)

    def request(self, name: str) -> Optional[ControlSignal]:
        """Raise the signal called ``name``.

        Returns:
            The signal raised, or None if ``name`` is not a known signal.
        """
        try:
            signal = ControlSignal(name)
        except ValueError:
            return None

        logger.info(f"Control signal received: {signal.value}")
        if signal is ControlSignal.START:
            self._stop.clear()
            self._start.set()
        elif signal is ControlSignal.STOP:
            self._stop.set()

        for callback in self._listeners.get(signal, []):
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in control listener for {signal.value}: {e}")
        return signal

    async def wait_for_start(self) -> None:
        await self._start.wait()

    async def wait_for_stop(self) -> None:
        await self._stop.wait()

    def reset(self) -> None:
        self._start.clear()
        self._stop.clear()
