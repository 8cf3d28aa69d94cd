"""Application listener contract and a queue-backed implementation."""
from __future__ import annotations

import asyncio
import logging
from asyncio import QueueEmpty
from typing import Any, Dict, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionListener(Protocol):
    """Receives state-sync traffic for the application."""

    def start(self) -> None:
        ...

    async def handle_message(self, payload: Dict[str, Any]) -> None:
        ...

    def stop(self) -> None:
        """Halt active sync; the listener can be started again."""
        ...

    def destroy(self) -> None:
        """Terminal teardown."""
        ...


class QueueListener:
    """Buffers inbound sync messages until the application reads them."""

    def __init__(self, queue_size: int = 256) -> None:
        self.messages: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._active = False
        self._destroyed = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._destroyed:
            logger.warning("Ignoring start on a destroyed listener")
            return
        self._active = True

    async def handle_message(self, payload: Dict[str, Any]) -> None:
        if not self._active:
            logger.debug("Listener inactive; dropping %s", payload.get("type"))
            return
        if self.messages.full():
            try:
                self.messages.get_nowait()
            except QueueEmpty:
                pass
            logger.warning("Listener queue full; dropped oldest message")
        self.messages.put_nowait(payload)

    def stop(self) -> None:
        self._active = False

    def destroy(self) -> None:
        self._active = False
        self._destroyed = True
        while True:
            try:
                self.messages.get_nowait()
            except QueueEmpty:
                break


__all__ = ["QueueListener", "SessionListener"]
