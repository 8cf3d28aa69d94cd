"""Session lifecycle orchestration: prepare, join and update a shared conference."""
from __future__ import annotations

import asyncio
import atexit
import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import httpx

from .backend.bridge import SessionBridge
from .backend.http_client import CowebHttpClient
from .config import Settings, get_settings
from .deferred import CompletionHandle, Outcome
from .errors import ApplicationCallbackError, InvalidStateError, TransportError
from .hub import NotificationHub
from .listener import SessionListener
from .session_key import resolve_session_key
from .state import ConferenceParams, DisconnectInfo, PhaseResult, SessionPhase, Topic
from .tasks import spawn_background

logger = logging.getLogger(__name__)

ParamsLike = Union[ConferenceParams, Mapping[str, Any], None]


@dataclass
class PrepContext:
    """Parameters and outstanding handle of the phase currently in flight."""

    params: ConferenceParams
    handle: Optional[CompletionHandle[Any]] = None
    response: Optional[Dict[str, Any]] = None


class SessionController:
    """
    Drives one client through a collaborative session.

    Phases advance prepare → join → update, one operation at a time. Phase
    checks read the bridge's state; the controller never keeps its own copy.
    Each operation returns a :class:`CompletionHandle` that settles exactly
    once. Progress goes out on the hub as ``busy`` strings and a final
    ``end`` notification.
    """

    def __init__(
        self,
        *,
        listener: SessionListener,
        settings: Optional[Settings] = None,
        hub: Optional[NotificationHub] = None,
        http_client: Optional[CowebHttpClient] = None,
        bridge: Optional[SessionBridge] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._listener: Optional[SessionListener] = listener
        self._hub = hub or NotificationHub(self.settings.hub_queue_size)
        self._http: Optional[CowebHttpClient] = http_client or CowebHttpClient(self.settings)
        self._bridge: Optional[SessionBridge] = bridge or SessionBridge(
            self.settings, listener, http_client=self._http
        )
        self._prep: Optional[PrepContext] = None
        self._last_prep: Optional[ConferenceParams] = None
        self._last_error: Optional[ApplicationCallbackError] = None
        self._disconnect_watch: Optional[asyncio.Future[DisconnectInfo]] = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._destroying = False
        self._destroyed = False

        # destroy as early as possible on interpreter shutdown so the
        # transport still gets a chance to say goodbye
        atexit.register(self._on_host_teardown)

    # ============================================================
    # Read access
    # ============================================================

    @property
    def phase(self) -> SessionPhase:
        if self._bridge is None:
            return SessionPhase.IDLE
        return self._bridge.state

    @property
    def debug(self) -> bool:
        return self.settings.debug

    @property
    def hub(self) -> NotificationHub:
        return self._hub

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def conference_params(self) -> Optional[ConferenceParams]:
        """Copy of the parameters last given to prepare, defaults filled in."""
        if self._last_prep is None:
            return None
        return self._last_prep.model_copy(deep=True)

    @property
    def last_response(self) -> Optional[Dict[str, Any]]:
        if self._prep is None or self._prep.response is None:
            return None
        return copy.deepcopy(self._prep.response)

    @property
    def last_error(self) -> Optional[ApplicationCallbackError]:
        return self._last_error

    # ============================================================
    # Teardown
    # ============================================================

    def destroy(self) -> None:
        """Leave the session and release every collaborator. Runs once."""
        if self._destroying:
            logger.debug("destroy() already ran; ignoring")
            return
        # set first so a racing disconnect does not publish a stale busy tag
        self._destroying = True
        bridge = self._require_bridge()

        announced = bridge.state is SessionPhase.UPDATED
        if announced:
            self._teardown_step("announce end", self._hub.publish, Topic.END, {"connected": True})
        self._teardown_step("leave", self._leave, end_announced=announced)

        if self._listener is not None:
            self._teardown_step("listener destroy", self._listener.destroy)
        self._teardown_step("bridge destroy", bridge.destroy)
        if self._http is not None:
            self._teardown_step(
                "http close",
                spawn_background,
                self._http.aclose(),
                name="coweb-http-close",
                tasks=self._background_tasks,
            )

        self._listener = None
        self._prep = None
        self._last_prep = None
        self._bridge = None
        self._http = None
        atexit.unregister(self._on_host_teardown)
        self._destroyed = True
        logger.info("Session controller destroyed")

    @staticmethod
    def _teardown_step(name: str, step: Callable[..., Any], /, *args: Any, **kwargs: Any) -> None:
        try:
            step(*args, **kwargs)
        except Exception as e:
            logger.warning("Teardown step '%s' failed: %s", name, e, exc_info=True)

    def _on_host_teardown(self) -> None:
        try:
            self.destroy()
        except Exception:
            logger.exception("Error destroying session controller at shutdown")

    # ============================================================
    # Credentials
    # ============================================================

    def login(self, username: str, password: str) -> Awaitable[httpx.Response]:
        """Authenticate with the credential endpoint. Idle only."""
        bridge = self._require_bridge()
        if bridge.state is not SessionPhase.IDLE:
            raise InvalidStateError("login() not valid in current state", phase=bridge.state)
        assert self._http is not None
        return self._http.login(username, password)

    def logout(self) -> Awaitable[httpx.Response]:
        """Leave any session, then drop credentials on the server."""
        self.leave_conference()
        assert self._http is not None
        return self._http.logout()

    # ============================================================
    # Phase operations
    # ============================================================

    def leave_conference(self) -> CompletionHandle[None]:
        """Leave a live session or abort one in progress. Settles immediately."""
        self._require_bridge()
        return self._leave()

    def prepare_conference(self, params: ParamsLike = None) -> CompletionHandle[PhaseResult]:
        bridge = self._require_bridge()
        if bridge.state is not SessionPhase.IDLE:
            raise InvalidStateError("prepare_conference() not valid in current state", phase=bridge.state)

        requested = ConferenceParams.coerce(params)
        if requested.key is None:
            requested.key = resolve_session_key(self.settings.page_url, self.settings.session_key_param)
        if requested.auto_update is None:
            requested.auto_update = True

        handle: CompletionHandle[PhaseResult] = CompletionHandle("prepare")
        self._prep = PrepContext(params=requested, handle=handle)
        self._last_prep = requested.model_copy(deep=True)

        logger.info("🔑 [PREPARE] key=%s collab=%s", requested.key, requested.collab)
        task = bridge.prepare_conference(requested.key, requested.collab)
        self._watch(
            task,
            lambda response: self._on_prepared(handle, response),
            lambda exc: self._on_prepare_error(handle, exc),
        )
        self._arm_disconnect_watch(bridge)
        self._hub.publish(Topic.BUSY, "preparing")
        return handle

    def join_conference(self, next_handle: Optional[CompletionHandle[PhaseResult]] = None) -> CompletionHandle[PhaseResult]:
        bridge = self._require_bridge()
        if bridge.state is not SessionPhase.PREPARED or self._prep is None:
            raise InvalidStateError("join_conference() not valid in current state", phase=bridge.state)

        self._hub.publish(Topic.BUSY, "joining")
        handle = next_handle or CompletionHandle("join")
        self._prep.handle = handle
        logger.info("🚪 [JOIN] joining session")
        task = bridge.join_conference()
        self._watch(
            task,
            lambda _: self._on_joined(handle),
            lambda exc: self._on_phase_error(handle, exc),
        )
        return handle

    def update_in_conference(self, next_handle: Optional[CompletionHandle[None]] = None) -> CompletionHandle[None]:
        bridge = self._require_bridge()
        if bridge.state is not SessionPhase.JOINED or self._prep is None:
            raise InvalidStateError("update_in_conference() not valid in current state", phase=bridge.state)

        self._hub.publish(Topic.BUSY, "updating")
        handle = next_handle or CompletionHandle("update")
        self._prep.handle = handle
        logger.info("🔄 [UPDATE] fetching session state")
        task = bridge.update_in_conference()
        self._watch(
            task,
            lambda _: self._on_updated(handle),
            lambda exc: self._on_phase_error(handle, exc),
        )
        return handle

    # ============================================================
    # Transport continuations
    # ============================================================

    def _on_prepared(self, handle: CompletionHandle[PhaseResult], response: Dict[str, Any]) -> None:
        ctx = self._owning_context(handle)
        if ctx is None:
            return
        ctx.response = copy.deepcopy(response)
        ctx.handle = None
        next_handle: Optional[CompletionHandle[PhaseResult]] = CompletionHandle("join") if ctx.params.auto_join else None

        outcome = handle.resolve(PhaseResult(response=copy.deepcopy(response), next=next_handle))
        if not self._continuation_ok(outcome, next_handle):
            return
        if next_handle is not None:
            self._advance(self.join_conference, next_handle)

    def _on_prepare_error(self, handle: CompletionHandle[Any], exc: TransportError) -> None:
        logger.warning("❌ [PREPARE] failed: %s", exc)
        # no disconnect here; the session connection was never opened.
        # an aborted prepare has already published "aborting"
        if self._prep is not None and self._prep.handle is handle:
            self._hub.publish(Topic.BUSY, str(exc))
        self._on_phase_error(handle, exc)

    def _on_joined(self, handle: CompletionHandle[PhaseResult]) -> None:
        ctx = self._owning_context(handle)
        if ctx is None:
            return
        ctx.handle = None
        next_handle: Optional[CompletionHandle[None]] = CompletionHandle("update") if ctx.params.auto_update else None

        outcome = handle.resolve(PhaseResult(next=next_handle))
        if not self._continuation_ok(outcome, next_handle):
            return
        if next_handle is not None:
            self._advance(self.update_in_conference, next_handle)

    def _on_updated(self, handle: CompletionHandle[None]) -> None:
        ctx = self._owning_context(handle)
        if ctx is None:
            return
        ctx.handle = None
        outcome = handle.resolve(None)
        for fault in outcome.faults:
            logger.error("Application update continuation failed: %s", fault, exc_info=fault)
        logger.info("✅ [UPDATE] session is live")
        self._hub.publish(Topic.BUSY, "ready")

    def _on_phase_error(self, handle: CompletionHandle[Any], exc: TransportError) -> None:
        if self._prep is not None and self._prep.handle is handle:
            self._prep = None
        logger.info("%s failed: %s", handle.label, exc)
        outcome = handle.fail(exc)
        for fault in outcome.faults:
            logger.error("Application %s errback failed: %s", handle.label, fault, exc_info=fault)

    def _owning_context(self, handle: CompletionHandle[Any]) -> Optional[PrepContext]:
        """The prep context still waiting on ``handle``; fails the handle when it was aborted."""
        ctx = self._prep
        if ctx is not None and ctx.handle is handle:
            return ctx
        logger.info("%s finished after the session was abandoned", handle.label)
        if not handle.done():
            handle.fail(TransportError("operation-aborted"))
        return None

    def _continuation_ok(self, outcome: Outcome, next_handle: Optional[CompletionHandle[Any]]) -> bool:
        if outcome.ok:
            return True
        assert outcome.fault is not None
        self._on_app_prepare_error(outcome.fault)
        if next_handle is not None and not next_handle.done():
            next_handle.fail(ApplicationCallbackError("bad-application-state"))
        return False

    def _advance(self, operation: Callable[[Any], CompletionHandle[Any]], next_handle: CompletionHandle[Any]) -> None:
        try:
            operation(next_handle)
        except InvalidStateError as exc:
            # application code already moved the session elsewhere
            logger.warning("Auto-advance skipped: %s", exc)
            if not next_handle.done():
                next_handle.fail(exc)

    def _watch(
        self,
        task: asyncio.Future[Any],
        on_success: Callable[[Any], None],
        on_failure: Callable[[TransportError], None],
    ) -> None:
        def _done(finished: asyncio.Future[Any]) -> None:
            if finished.cancelled():
                on_failure(TransportError("operation-aborted"))
                return
            exc = finished.exception()
            if exc is None:
                on_success(finished.result())
            elif isinstance(exc, TransportError):
                on_failure(exc)
            else:
                error = TransportError("server-error", detail=str(exc))
                error.__cause__ = exc
                on_failure(error)

        task.add_done_callback(_done)

    # ============================================================
    # Leave / disconnect / application faults
    # ============================================================

    def _leave(self, *, end_announced: bool = False) -> CompletionHandle[None]:
        bridge = self._require_bridge()
        if bridge.state is SessionPhase.UPDATED:
            if not end_announced:
                self._hub.publish(Topic.END, {"connected": True})
        else:
            self._hub.publish(Topic.BUSY, "aborting")
            self._prep = None

        done: CompletionHandle[None] = CompletionHandle.succeeded(label="leave")
        bridge.logout()
        return done

    def _arm_disconnect_watch(self, bridge: SessionBridge) -> None:
        watch = bridge.disconnected
        if watch is None or watch is self._disconnect_watch:
            return
        self._disconnect_watch = watch
        watch.add_done_callback(self._on_disconnect_signal)

    def _on_disconnect_signal(self, watch: asyncio.Future[DisconnectInfo]) -> None:
        if watch is self._disconnect_watch:
            self._disconnect_watch = None
        if watch.cancelled():
            return
        self._on_disconnected(watch.result())

    def _on_disconnected(self, info: DisconnectInfo) -> None:
        if self._destroying:
            # teardown already announced the end and is stopping the listener
            logger.info("Disconnect during teardown (state=%s tag=%s)", info.state.value, info.tag)
            return
        if info.tag:
            self._hub.publish(Topic.BUSY, info.tag)
        logger.warning("⚠️ Disconnected from session (state=%s tag=%s)", info.state.value, info.tag)
        if info.state is SessionPhase.UPDATED:
            self._hub.publish(Topic.END, {"connected": False})
        if self._listener is not None:
            self._listener.stop()
        # a context still holding a handle belongs to a phase that will settle it
        if self._prep is not None and self._prep.handle is None:
            self._prep = None

    def _on_app_prepare_error(self, fault: Exception) -> None:
        error = ApplicationCallbackError(f"application continuation failed: {fault}")
        error.__cause__ = fault
        self._last_error = error
        logger.error("%s", error, exc_info=fault)
        if self._bridge is not None:
            self._leave()
        self._hub.publish(Topic.BUSY, "bad-application-state")

    def _require_bridge(self) -> SessionBridge:
        if self._destroyed or self._bridge is None:
            raise InvalidStateError("session controller destroyed")
        return self._bridge


__all__ = ["PrepContext", "SessionController"]
