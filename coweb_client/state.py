"""Shared session state definitions for the coweb client."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .deferred import CompletionHandle


class SessionPhase(str, enum.Enum):
    """
    Session phases in chronological order:

    1. IDLE       - No session, or the last one ended
    2. PREPARING  - Asking the admin endpoint for session info (busy)
    3. PREPARED   - Session info known, not connected yet
    4. JOINING    - Opening the session connection (busy)
    5. JOINED     - Connected, local state not synced yet
    6. UPDATING   - Fetching full state from the session (busy)
    7. UPDATED    - Fully live in the session
    """
    IDLE = "idle"
    PREPARING = "preparing"
    PREPARED = "prepared"
    JOINING = "joining"
    JOINED = "joined"
    UPDATING = "updating"
    UPDATED = "updated"


class Topic(str, enum.Enum):
    """Notification hub topics."""
    BUSY = "coweb.busy"
    END = "coweb.end"


@dataclass
class ControllerEvent:
    """Notification payload distributed to hub subscribers."""

    topic: Topic
    payload: Any


@dataclass
class DisconnectInfo:
    """What the transport knew when the server connection dropped."""

    state: SessionPhase
    tag: Optional[str] = None


@dataclass
class PhaseResult:
    """Value a prepare or join handle resolves with."""

    response: Optional[Dict[str, Any]] = None
    next: Optional["CompletionHandle[Any]"] = None


class ConferenceParams(BaseModel):
    """Caller configuration for one prepare/join/update pass."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    key: Optional[str] = Field(None, description="Session key; derived from the page URL when absent")
    collab: bool = Field(True, description="Join as a cooperative participant")
    auto_join: bool = Field(False, alias="autoJoin", description="Join right after a successful prepare")
    auto_update: Optional[bool] = Field(None, alias="autoUpdate", description="Update right after a successful join")

    @classmethod
    def coerce(cls, params: Union["ConferenceParams", Mapping[str, Any], None]) -> "ConferenceParams":
        """Return a private deep copy of ``params``; the caller's object is never touched."""
        if params is None:
            return cls()
        if isinstance(params, cls):
            return params.model_copy(deep=True)
        return cls.model_validate(dict(params)).model_copy(deep=True)


__all__ = [
    "ConferenceParams",
    "ControllerEvent",
    "DisconnectInfo",
    "PhaseResult",
    "SessionPhase",
    "Topic",
]
