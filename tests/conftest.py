"""
Shared fixtures for coweb client tests.
"""

import asyncio
import atexit
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from coweb_client.backend.http_client import CowebHttpClient
from coweb_client.config import Settings
from coweb_client.errors import TransportError, UnsolicitedDisconnectError
from coweb_client.hub import NotificationHub
from coweb_client.session_controller import SessionController
from coweb_client.state import DisconnectInfo, SessionPhase

_NEXT_STABLE = {
    SessionPhase.PREPARING: SessionPhase.PREPARED,
    SessionPhase.JOINING: SessionPhase.JOINED,
    SessionPhase.UPDATING: SessionPhase.UPDATED,
}


class FakeBridge:
    """Transport double whose remote steps are completed by the test.

    - prepare/join/update return a pending future and flip to the busy phase
    - succeed()/fail() complete the pending step like the server would
    - drop() simulates the server closing the connection
    """

    def __init__(self) -> None:
        self.state = SessionPhase.IDLE
        self.disconnected: Optional[asyncio.Future] = None
        self.pending: Optional[asyncio.Future] = None
        self.calls: List[str] = []
        self.prepared_with: Optional[Tuple[str, bool]] = None

    def _begin(self, name: str, busy: SessionPhase) -> asyncio.Future:
        self.calls.append(name)
        self.state = busy
        self.pending = asyncio.get_running_loop().create_future()
        return self.pending

    def prepare_conference(self, key: str, collab: bool) -> asyncio.Future:
        self.prepared_with = (key, collab)
        self.disconnected = asyncio.get_running_loop().create_future()
        return self._begin("prepare", SessionPhase.PREPARING)

    def join_conference(self) -> asyncio.Future:
        return self._begin("join", SessionPhase.JOINING)

    def update_in_conference(self) -> asyncio.Future:
        return self._begin("update", SessionPhase.UPDATING)

    def succeed(self, value: Any = None) -> None:
        self.state = _NEXT_STABLE[self.state]
        self.pending.set_result(value)

    def fail(self, tag: str = "server-unavailable") -> None:
        self.state = SessionPhase.IDLE
        if self.disconnected is not None and not self.disconnected.done():
            self.disconnected.cancel()
        self.pending.set_exception(TransportError(tag))

    def drop(self, tag: Optional[str] = "stream-disconnect") -> None:
        prior, self.state = self.state, SessionPhase.IDLE
        if self.pending is not None and not self.pending.done():
            self.pending.set_exception(UnsolicitedDisconnectError(tag or "stream-disconnect"))
        self.disconnected.set_result(DisconnectInfo(state=prior, tag=tag))

    def logout(self) -> None:
        self.calls.append("logout")
        if self.pending is not None and not self.pending.done():
            self.pending.cancel()
        if self.disconnected is not None and not self.disconnected.done():
            self.disconnected.cancel()
        self.state = SessionPhase.IDLE

    def destroy(self) -> None:
        self.calls.append("destroy")
        self.state = SessionPhase.IDLE


async def drain(rounds: int = 5) -> None:
    """Let done-callbacks and chained continuations run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def drain_events(queue: asyncio.Queue) -> List[Tuple[str, Any]]:
    events = []
    while not queue.empty():
        event = queue.get_nowait()
        events.append((event.topic.value, event.payload))
    return events


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        server_url="http://coweb.test",
        ws_url="ws://coweb.test",
        page_url="http://apps.example.com/board/index.html?room=7",
        hub_queue_size=64,
    )


@pytest.fixture
def hub():
    return NotificationHub(queue_size=64)


@pytest.fixture
def events(hub):
    return hub.subscribe()


@pytest.fixture
def listener():
    return MagicMock(name="listener")


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def controller(settings, listener, hub, bridge):
    ctl = SessionController(
        listener=listener,
        settings=settings,
        hub=hub,
        http_client=CowebHttpClient(settings),
        bridge=bridge,
    )
    yield ctl
    if not ctl.destroyed:
        atexit.unregister(ctl._on_host_teardown)


@pytest.fixture
def session_info() -> Dict[str, Any]:
    return {"sessionurl": "/session/abc", "sessionid": "abc", "key": "board"}
