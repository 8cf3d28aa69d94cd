"""Session WebSocket client used while joined to a conference."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import websockets

from ..config import Settings

logger = logging.getLogger(__name__)

IncomingHandler = Callable[[dict[str, Any]], Awaitable[None]]
CloseHandler = Callable[[Optional[str]], None]


class BridgeWebSocketClient:
    """Maintains one session websocket connection."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._conn: Optional[Any] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._handler: Optional[IncomingHandler] = None
        self._on_close: Optional[CloseHandler] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self, uri: str, handler: IncomingHandler, on_close: Optional[CloseHandler] = None) -> None:
        try:
            await self.disconnect()
            logger.info("Connecting to session websocket %s", uri)
            self._stop_event.clear()
            self._handler = handler
            self._on_close = on_close
            self._conn = await websockets.connect(
                uri,
                open_timeout=self.settings.transport.open_timeout,
                ping_interval=None,
                ping_timeout=None,
            )
            self._listener_task = asyncio.create_task(self._listen(), name="coweb-ws-listener")
        except Exception as e:
            logger.error("Failed to connect to session websocket: %s", e)
            raise

    async def disconnect(self) -> None:
        try:
            self._stop_event.set()
            if self._listener_task:
                self._listener_task.cancel()
                try:
                    await self._listener_task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Error during listener task cleanup: %s", e)
            self._listener_task = None
            if self._conn:
                try:
                    await self._conn.close()
                except Exception as e:
                    logger.warning("Error closing websocket connection: %s", e)
                self._conn = None
            self._handler = None
            self._on_close = None
        except Exception as e:
            logger.warning("Error during disconnect: %s", e)

    async def send(self, message: dict[str, Any]) -> None:
        if not self._conn:
            logger.warning("Cannot send message - session websocket not connected")
            return
        try:
            await self._conn.send(json.dumps(message))
        except websockets.ConnectionClosed:
            logger.warning("Cannot send message - websocket connection closed")
        except Exception as e:
            logger.error("Failed to send websocket message: %s", e)

    async def _listen(self) -> None:
        assert self._conn is not None
        reason: Optional[str] = None
        try:
            async for message in self._conn:
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from session server: %s", message)
                    continue

                if payload.get("type") == "ping":
                    await self.send({"type": "pong"})
                    continue

                if self._handler:
                    try:
                        await self._handler(payload)
                    except Exception as e:
                        logger.exception("Error in websocket message handler: %s", e)
            reason = getattr(self._conn, "close_reason", None) or None
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK as exc:
            logger.info("Session websocket closed cleanly")
            reason = exc.rcvd.reason if exc.rcvd else None
        except websockets.ConnectionClosedError as exc:
            logger.warning("Session websocket closed: %s", exc)
            reason = exc.rcvd.reason if exc.rcvd else None
        except Exception:
            logger.exception("Session websocket listener crashed")
        finally:
            unsolicited = not self._stop_event.is_set()
            self._stop_event.set()
            self._listener_task = None
            if self._conn:
                await self._conn.close()
                self._conn = None
            on_close, self._on_close = self._on_close, None
            if unsolicited and on_close is not None:
                on_close(reason or None)


__all__ = ["BridgeWebSocketClient", "CloseHandler", "IncomingHandler"]
