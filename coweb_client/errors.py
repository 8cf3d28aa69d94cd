"""Exceptions raised by the session controller and its transport."""
from __future__ import annotations

from typing import Optional

from .state import SessionPhase


class SessionError(RuntimeError):
    """Base class for session lifecycle failures."""


class InvalidStateError(SessionError):
    """Raised when an operation is not valid in the current phase."""

    def __init__(self, message: str, *, phase: Optional[SessionPhase] = None) -> None:
        super().__init__(message)
        self.phase = phase


class TransportError(SessionError):
    """Raised when a transport step fails. The message is a short status tag."""

    def __init__(self, tag: str, *, detail: Optional[str] = None) -> None:
        super().__init__(tag)
        self.tag = tag
        self.detail = detail


class UnsolicitedDisconnectError(TransportError):
    """The server connection dropped without the client asking for it."""


class ApplicationCallbackError(SessionError):
    """Wraps a fault raised by application code continuing a phase."""


class HandleSettledError(SessionError):
    """Raised when a completion handle is settled twice."""


__all__ = [
    "ApplicationCallbackError",
    "HandleSettledError",
    "InvalidStateError",
    "SessionError",
    "TransportError",
    "UnsolicitedDisconnectError",
]
