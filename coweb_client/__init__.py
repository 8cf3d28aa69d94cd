"""Client-side session lifecycle controller for coweb collaborative sessions."""
from __future__ import annotations

from typing import Optional

from .config import Settings, get_settings
from .deferred import CompletionHandle, Outcome
from .errors import (
    ApplicationCallbackError,
    HandleSettledError,
    InvalidStateError,
    SessionError,
    TransportError,
    UnsolicitedDisconnectError,
)
from .hub import NotificationHub
from .listener import QueueListener, SessionListener
from .logging_config import configure_logging
from .session_controller import SessionController
from .state import ConferenceParams, ControllerEvent, DisconnectInfo, PhaseResult, SessionPhase, Topic


def init_session(
    listener: Optional[SessionListener] = None,
    *,
    settings: Optional[Settings] = None,
) -> SessionController:
    """Build a ready-to-use controller with logging configured from settings."""
    settings = settings or get_settings()
    configure_logging(
        settings.effective_log_level,
        settings.log_directory if settings.log_to_file else None,
        settings.log_retention_days,
    )
    if listener is None:
        listener = QueueListener(settings.listener_queue_size)
    return SessionController(listener=listener, settings=settings)


__all__ = [
    "ApplicationCallbackError",
    "CompletionHandle",
    "ConferenceParams",
    "ControllerEvent",
    "DisconnectInfo",
    "HandleSettledError",
    "InvalidStateError",
    "NotificationHub",
    "Outcome",
    "PhaseResult",
    "QueueListener",
    "SessionController",
    "SessionError",
    "SessionListener",
    "SessionPhase",
    "Settings",
    "Topic",
    "TransportError",
    "UnsolicitedDisconnectError",
    "init_session",
]
