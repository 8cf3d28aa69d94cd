"""Transport bridge: owns the authoritative session phase and the server link."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from ..config import Settings
from ..errors import InvalidStateError, TransportError, UnsolicitedDisconnectError
from ..listener import SessionListener
from ..state import DisconnectInfo, SessionPhase
from ..tasks import spawn_background
from .http_client import CowebHttpClient
from .ws_client import BridgeWebSocketClient

logger = logging.getLogger(__name__)

WebSocketFactory = Callable[[Settings], BridgeWebSocketClient]


class SessionBridge:
    """
    Speaks to the coweb server on behalf of the session controller.

    Each phase operation flips the state to its busy value synchronously and
    returns a task for the remote step. Prepare goes over HTTP to the admin
    endpoint; join and update are request/reply exchanges on the session
    websocket. ``disconnected`` resolves only when the server drops the link
    on its own; a client logout cancels it instead.
    """

    def __init__(
        self,
        settings: Settings,
        listener: Optional[SessionListener],
        *,
        http_client: CowebHttpClient,
        ws_factory: WebSocketFactory = BridgeWebSocketClient,
    ) -> None:
        self.settings = settings
        self._listener = listener
        self._http = http_client
        self._ws_factory = ws_factory
        self._ws: Optional[BridgeWebSocketClient] = None
        self._state = SessionPhase.IDLE
        self._op_task: Optional[asyncio.Task[Any]] = None
        self._disconnected: Optional[asyncio.Future[DisconnectInfo]] = None
        self._waiters: Dict[str, asyncio.Future[Dict[str, Any]]] = {}
        self._session_info: Optional[Dict[str, Any]] = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> SessionPhase:
        return self._state

    @property
    def disconnected(self) -> Optional[asyncio.Future[DisconnectInfo]]:
        return self._disconnected

    @property
    def session_info(self) -> Optional[Dict[str, Any]]:
        return self._session_info

    # ============================================================
    # Phase operations
    # ============================================================

    def prepare_conference(self, key: str, collab: bool) -> asyncio.Task[Dict[str, Any]]:
        self._require(SessionPhase.IDLE, "prepare_conference")
        loop = asyncio.get_running_loop()
        self._state = SessionPhase.PREPARING
        self._disconnected = loop.create_future()
        self._op_task = loop.create_task(self._prepare(key, collab), name="coweb-prepare")
        return self._op_task

    def join_conference(self) -> asyncio.Task[None]:
        self._require(SessionPhase.PREPARED, "join_conference")
        self._state = SessionPhase.JOINING
        self._op_task = asyncio.get_running_loop().create_task(self._join(), name="coweb-join")
        return self._op_task

    def update_in_conference(self) -> asyncio.Task[None]:
        self._require(SessionPhase.JOINED, "update_in_conference")
        self._state = SessionPhase.UPDATING
        self._op_task = asyncio.get_running_loop().create_task(self._update(), name="coweb-update")
        return self._op_task

    def logout(self) -> None:
        """Drop the session now; the goodbye to the server happens in the background."""
        prior = self._state
        task, self._op_task = self._op_task, None
        if task is not None:
            _cancel_pending(task)
        self._reset()
        self._session_info = None
        ws, self._ws = self._ws, None
        if ws is not None:
            spawn_background(self._close_session(ws), name="coweb-logout", tasks=self._background_tasks)
        logger.info("Left session (was %s)", prior.value)

    def destroy(self) -> None:
        self.logout()
        self._listener = None

    # ============================================================
    # Remote steps
    # ============================================================

    async def _prepare(self, key: str, collab: bool) -> Dict[str, Any]:
        try:
            info = await self._http.prepare(key, collab)
        except TransportError:
            if self._owns_op():
                self._reset()
            raise
        self._session_info = info
        self._state = SessionPhase.PREPARED
        logger.info("Prepared session %s", info.get("sessionid", key))
        return info

    async def _join(self) -> None:
        assert self._session_info is not None
        uri = self._session_uri(self._session_info["sessionurl"])
        ws = self._ws_factory(self.settings)
        self._ws = ws
        try:
            await ws.connect(uri, self._handle_message, on_close=self._handle_close)
            await self._request(
                {"type": "join", "sessionid": self._session_info.get("sessionid")},
                expect="joined",
            )
        except TransportError:
            await self._abandon(ws)
            raise
        except Exception as exc:
            await self._abandon(ws)
            raise TransportError("server-unavailable", detail=str(exc)) from exc
        self._state = SessionPhase.JOINED
        logger.info("Joined session at %s", uri)

    async def _update(self) -> None:
        ws = self._ws
        try:
            reply = await self._request({"type": "update"}, expect="updated")
        except TransportError:
            await self._abandon(ws)
            raise
        self._state = SessionPhase.UPDATED
        listener = self._listener
        if listener is not None:
            try:
                listener.start()
                await listener.handle_message(reply)
            except Exception as exc:
                logger.exception("Listener rejected the session state snapshot")
                listener.stop()
                await self._abandon(ws)
                raise TransportError("bad-application-state", detail=str(exc)) from exc
        logger.info("Updated in session")

    async def _request(self, message: Dict[str, Any], *, expect: str) -> Dict[str, Any]:
        if self._ws is None:
            raise TransportError("server-unavailable", detail="no session connection")
        waiter: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._waiters[expect] = waiter
        try:
            await self._ws.send(message)
            return await asyncio.wait_for(waiter, timeout=self.settings.transport.reply_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("No %s reply within %.1fs", expect, self.settings.transport.reply_timeout)
            raise TransportError("server-unavailable", detail=f"{expect} timeout") from exc
        finally:
            self._waiters.pop(expect, None)

    async def _close_session(self, ws: BridgeWebSocketClient) -> None:
        if ws.connected:
            await ws.send({"type": "leave"})
        await ws.disconnect()

    async def _abandon(self, ws: Optional[BridgeWebSocketClient]) -> None:
        if self._owns_op():
            self._reset()
        if ws is None:
            return
        if self._ws is ws:
            self._ws = None
        await ws.disconnect()

    # ============================================================
    # Inbound traffic
    # ============================================================

    async def _handle_message(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("type")
        waiter = self._waiters.get(kind) if isinstance(kind, str) else None
        if waiter is not None and not waiter.done():
            waiter.set_result(payload)
            return
        if kind == "error":
            tag = payload.get("tag") or "server-error"
            logger.warning("Server reported error: %s", tag)
            self._fail_waiters(TransportError(tag))
            return
        if self._state is SessionPhase.UPDATED and self._listener is not None:
            await self._listener.handle_message(payload)
        else:
            logger.debug("Dropping %s message in state %s", kind, self._state.value)

    def _handle_close(self, reason: Optional[str]) -> None:
        prior = self._state
        tag = reason or "stream-disconnect"
        logger.warning("Session connection lost in state %s: %s", prior.value, tag)
        self._ws = None
        self._state = SessionPhase.IDLE
        self._fail_waiters(UnsolicitedDisconnectError(tag))
        if self._disconnected is not None and not self._disconnected.done():
            self._disconnected.set_result(DisconnectInfo(state=prior, tag=tag))

    # ============================================================
    # Helpers
    # ============================================================

    def _require(self, phase: SessionPhase, operation: str) -> None:
        if self._state is not phase:
            raise InvalidStateError(f"{operation}() not valid in state {self._state.value}", phase=self._state)

    def _owns_op(self) -> bool:
        return self._op_task is not None and self._op_task is asyncio.current_task()

    def _reset(self) -> None:
        self._state = SessionPhase.IDLE
        if self._disconnected is not None:
            _cancel_pending(self._disconnected)
        for waiter in self._waiters.values():
            _cancel_pending(waiter)

    def _fail_waiters(self, error: TransportError) -> None:
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.set_exception(error)

    def _session_uri(self, session_url: str) -> str:
        if session_url.startswith(("ws://", "wss://")):
            return session_url
        return f"{self.settings.ws_url}/{session_url.lstrip('/')}"


def _cancel_pending(future: asyncio.Future[Any]) -> None:
    """Cancel ``future`` unless it is done or its loop has already been closed."""
    if future.done():
        return
    if future.get_loop().is_closed():
        # interpreter shutdown after asyncio.run(); nothing can run the callbacks
        logger.debug("Event loop closed; leaving %r pending", future)
        return
    future.cancel()


__all__ = ["SessionBridge", "WebSocketFactory"]
