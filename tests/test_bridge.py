"""Tests for the transport bridge against a scripted session socket."""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest
import respx

from coweb_client.backend.bridge import SessionBridge
from coweb_client.backend.http_client import CowebHttpClient
from coweb_client.errors import InvalidStateError, TransportError, UnsolicitedDisconnectError
from coweb_client.listener import QueueListener
from coweb_client.state import DisconnectInfo, SessionPhase


class ScriptedSocket:
    """Stands in for BridgeWebSocketClient; answers requests from ``replies``."""

    def __init__(self, replies: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.replies = replies if replies is not None else {
            "join": {"type": "joined"},
            "update": {"type": "updated", "state": [{"topic": "grid", "value": 1}]},
        }
        self.sent: List[Dict[str, Any]] = []
        self.uri: Optional[str] = None
        self.connected = False
        self.disconnects = 0
        self._handler = None
        self._on_close = None

    async def connect(self, uri, handler, on_close=None):
        self.uri = uri
        self.connected = True
        self._handler = handler
        self._on_close = on_close

    async def send(self, message):
        self.sent.append(message)
        reply = self.replies.get(message["type"])
        if reply is not None:
            await self._handler(reply)

    async def disconnect(self):
        self.connected = False
        self.disconnects += 1

    async def push(self, payload):
        await self._handler(payload)

    def server_close(self, reason=None):
        self.connected = False
        self._on_close(reason)


@pytest.fixture
def socket():
    return ScriptedSocket()


@pytest.fixture
def sync_listener():
    return QueueListener()


@pytest.fixture
def make_bridge(settings, sync_listener, socket):
    def _make(**overrides):
        settings.transport.reply_timeout = overrides.pop("reply_timeout", 1.0)
        return SessionBridge(
            settings,
            sync_listener,
            http_client=CowebHttpClient(settings),
            ws_factory=lambda _settings: socket,
        )
    return _make


@pytest.fixture
def admin(respx_mock, session_info):
    respx_mock.post("/admin").mock(return_value=httpx.Response(200, json=session_info))
    return respx_mock


async def _prepared(bridge):
    await bridge.prepare_conference("board", True)


async def _updated(bridge):
    await bridge.prepare_conference("board", True)
    await bridge.join_conference()
    await bridge.update_in_conference()


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_full_pass_reaches_updated(make_bridge, admin, socket, sync_listener, session_info):
    bridge = make_bridge()

    task = bridge.prepare_conference("board", True)
    assert bridge.state is SessionPhase.PREPARING
    assert await task == session_info
    assert bridge.state is SessionPhase.PREPARED

    await bridge.join_conference()
    assert bridge.state is SessionPhase.JOINED
    assert socket.uri == "ws://coweb.test/session/abc"
    assert socket.sent[0] == {"type": "join", "sessionid": "abc"}

    await bridge.update_in_conference()
    assert bridge.state is SessionPhase.UPDATED
    assert sync_listener.active
    assert sync_listener.messages.get_nowait()["state"] == [{"topic": "grid", "value": 1}]


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_phase_operations_check_state(make_bridge, admin):
    bridge = make_bridge()

    with pytest.raises(InvalidStateError):
        bridge.join_conference()
    with pytest.raises(InvalidStateError):
        bridge.update_in_conference()

    await _prepared(bridge)
    with pytest.raises(InvalidStateError):
        bridge.prepare_conference("board", True)


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_prepare_failure_returns_to_idle(make_bridge, respx_mock: respx.MockRouter):
    respx_mock.post("/admin").mock(return_value=httpx.Response(403))
    bridge = make_bridge()

    with pytest.raises(TransportError, match="not-allowed"):
        await bridge.prepare_conference("board", True)

    assert bridge.state is SessionPhase.IDLE
    assert bridge.disconnected.cancelled()


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_join_rejected_by_server(make_bridge, admin, socket):
    socket.replies["join"] = {"type": "error", "tag": "session-full"}
    bridge = make_bridge()
    await _prepared(bridge)

    with pytest.raises(TransportError, match="session-full"):
        await bridge.join_conference()

    assert bridge.state is SessionPhase.IDLE
    assert socket.disconnects == 1


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_join_without_reply_times_out(make_bridge, admin, socket):
    socket.replies.pop("join")
    bridge = make_bridge(reply_timeout=0.05)
    await _prepared(bridge)

    with pytest.raises(TransportError, match="server-unavailable"):
        await bridge.join_conference()

    assert bridge.state is SessionPhase.IDLE


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_join_connect_failure(make_bridge, admin, socket):
    async def refuse(uri, handler, on_close=None):
        raise OSError("connection refused")

    socket.connect = refuse
    bridge = make_bridge()
    await _prepared(bridge)

    with pytest.raises(TransportError, match="server-unavailable"):
        await bridge.join_conference()
    assert bridge.state is SessionPhase.IDLE


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_absolute_session_url_used_as_is(make_bridge, respx_mock: respx.MockRouter, socket):
    respx_mock.post("/admin").mock(
        return_value=httpx.Response(200, json={"sessionurl": "wss://edge.example.com/s/1"})
    )
    bridge = make_bridge()
    await _prepared(bridge)

    await bridge.join_conference()

    assert socket.uri == "wss://edge.example.com/s/1"


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_sync_traffic_forwarded_only_when_updated(make_bridge, admin, socket, sync_listener):
    bridge = make_bridge()
    await bridge.prepare_conference("board", True)
    await bridge.join_conference()

    await socket.push({"type": "sync", "n": 1})
    await bridge.update_in_conference()
    sync_listener.messages.get_nowait()
    await socket.push({"type": "sync", "n": 2})

    assert sync_listener.messages.get_nowait() == {"type": "sync", "n": 2}
    assert sync_listener.messages.empty()


class RejectingListener(QueueListener):
    async def handle_message(self, payload):
        raise ValueError("snapshot schema mismatch")


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_listener_fault_during_update_resets_session(settings, admin, socket):
    settings.transport.reply_timeout = 1.0
    listener = RejectingListener()
    bridge = SessionBridge(
        settings,
        listener,
        http_client=CowebHttpClient(settings),
        ws_factory=lambda _settings: socket,
    )
    await bridge.prepare_conference("board", True)
    await bridge.join_conference()

    with pytest.raises(TransportError, match="bad-application-state") as excinfo:
        await bridge.update_in_conference()

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert bridge.state is SessionPhase.IDLE
    assert not listener.active
    assert socket.disconnects == 1
    await bridge.prepare_conference("board", True)
    assert bridge.state is SessionPhase.PREPARED


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_server_close_reports_unsolicited_disconnect(make_bridge, admin, socket):
    bridge = make_bridge()
    await _updated(bridge)
    watch = bridge.disconnected

    socket.server_close("session-ended")

    assert await watch == DisconnectInfo(state=SessionPhase.UPDATED, tag="session-ended")
    assert bridge.state is SessionPhase.IDLE


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_server_close_during_update_fails_request(make_bridge, admin, socket):
    socket.replies.pop("update")
    bridge = make_bridge()
    await bridge.prepare_conference("board", True)
    await bridge.join_conference()

    task = bridge.update_in_conference()
    await asyncio.sleep(0)
    socket.server_close(None)

    with pytest.raises(UnsolicitedDisconnectError, match="stream-disconnect"):
        await task
    assert (await bridge.disconnected).state is SessionPhase.UPDATING


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_logout_is_not_an_unsolicited_disconnect(make_bridge, admin, socket):
    bridge = make_bridge()
    await _updated(bridge)
    watch = bridge.disconnected

    bridge.logout()
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert watch.cancelled()
    assert bridge.state is SessionPhase.IDLE
    assert socket.sent[-1] == {"type": "leave"}
    assert socket.disconnects == 1


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_logout_cancels_operation_in_flight(make_bridge, admin, socket):
    socket.replies.pop("join")
    bridge = make_bridge()
    await _prepared(bridge)
    task = bridge.join_conference()
    await asyncio.sleep(0)

    bridge.logout()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert bridge.state is SessionPhase.IDLE
    await bridge.prepare_conference("board", True)
    assert bridge.state is SessionPhase.PREPARED


@pytest.mark.asyncio
@pytest.mark.respx(base_url="http://coweb.test")
async def test_destroy_releases_listener(make_bridge, admin, sync_listener):
    bridge = make_bridge()
    await _updated(bridge)

    bridge.destroy()

    assert bridge.state is SessionPhase.IDLE
    assert bridge._listener is None
