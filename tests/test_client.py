"""
Tests for RealtimeClient.
websockets.connect and httpx.AsyncClient are patched; nothing leaves the process.
Run with: pytest tests/test_client.py
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatrelay.client import RealtimeClient
from chatrelay.errors import ChatRelayError, ValidationError

WS_CONNECT = "chatrelay.client.websockets.connect"
HTTP_CLIENT = "chatrelay.client.httpx.AsyncClient"

_CLOSED = object()


class FakeSocket:
    """Stands in for a websockets connection: queued inbound frames, recorded sends."""

    def __init__(self, frames=(), close_code=1000, close_reason="", stay_open=False):
        self.queue = asyncio.Queue()
        for frame in frames:
            self.queue.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)
        if not stay_open:
            self.queue.put_nowait(_CLOSED)
        self.close_code = close_code
        self.close_reason = close_reason
        self.sent = []

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.queue.put_nowait(_CLOSED)


def _recorder(client, *events):
    seen = []
    for event in events:
        client.on(event, lambda data, event=event: seen.append((event, data)))
    return seen


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def test_failing_handler_does_not_stop_others():
    client = RealtimeClient(api_key="k")
    calls = []

    def broken(data):
        raise RuntimeError("handler bug")

    client.on("response", broken)
    client.on("response", calls.append)
    client.emit("response", {"content": "hi"})
    assert calls == [{"content": "hi"}]


def test_off_removes_handler():
    client = RealtimeClient(api_key="k")
    calls = []
    client.on("pong", calls.append)
    client.off("pong", calls.append)
    client.emit("pong", {})
    assert calls == []


def test_handle_frame_routes_by_type():
    client = RealtimeClient(api_key="k")
    seen = _recorder(client, "connected", "chunk", "error")

    client.handle_frame({"type": "connected", "clientId": "client_1", "message": "hi"})
    client.handle_frame({"type": "chunk", "content": "a ", "isComplete": False, "threadId": "t"})
    client.handle_frame({"type": "error", "message": "Rate limit exceeded", "details": {"limit": 1}})
    client.handle_frame({"type": "mystery"})

    assert client.client_id == "client_1"
    assert seen == [
        ("connected", {"clientId": "client_1", "message": "hi"}),
        ("chunk", {"content": "a ", "isComplete": False, "threadId": "t"}),
        ("error", {"error": "Rate limit exceeded", "details": {"limit": 1}}),
    ]


def test_socket_url_carries_key_and_user():
    client = RealtimeClient(ws_url="ws://relay.test/", api_key="k 1", user_id="u1")
    assert client.socket_url == "ws://relay.test/ws?apiKey=k+1&userId=u1"


# ---------------------------------------------------------------------------
# WebSocket lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_requires_key():
    with pytest.raises(ValidationError):
        await RealtimeClient(api_key="").connect()


@pytest.mark.asyncio
async def test_reconnection_gives_up_after_max_attempts():
    client = RealtimeClient(api_key="k", max_reconnect_attempts=3, reconnect_delay=0)
    seen = _recorder(client, "reconnecting", "max_reconnect_attempts_reached")

    with patch(WS_CONNECT, AsyncMock(side_effect=OSError("refused"))) as connect:
        assert await client.attempt_reconnection() is False
        assert await client.attempt_reconnection() is False

    assert connect.await_count == 3
    assert [e for e, _ in seen] == ["reconnecting"] * 3 + ["max_reconnect_attempts_reached"]
    assert [d["attempt"] for e, d in seen if e == "reconnecting"] == [1, 2, 3]


@pytest.mark.asyncio
async def test_dropped_connection_reconnects():
    first = FakeSocket([{"type": "connected", "clientId": "c1"}], close_code=1006)
    second = FakeSocket([{"type": "connected", "clientId": "c2"}], stay_open=True)
    client = RealtimeClient(api_key="k", reconnect_delay=0)
    seen = _recorder(client, "open", "disconnected", "reconnecting")

    with patch(WS_CONNECT, AsyncMock(side_effect=[first, second])):
        await client.connect()
        first_reader = client._reader
        await first_reader

    for _ in range(3):
        await asyncio.sleep(0)
    assert client.is_connected
    assert client.ws is second
    assert client.client_id == "c2"
    assert client.reconnect_attempts == 0
    assert [e for e, _ in seen] == ["open", "disconnected", "reconnecting", "open"]
    await client.disconnect()


@pytest.mark.asyncio
async def test_policy_violation_is_not_retried():
    sock = FakeSocket(close_code=1008, close_reason="Invalid API key")
    client = RealtimeClient(api_key="bad", reconnect_delay=0)
    seen = _recorder(client, "error", "reconnecting")

    with patch(WS_CONNECT, AsyncMock(return_value=sock)) as connect:
        await client.connect()
        await client._reader

    assert connect.await_count == 1
    assert seen == [("error", {"error": "Invalid API key", "details": {"code": 1008}})]
    assert client.is_connected is False


@pytest.mark.asyncio
async def test_non_object_frames_are_skipped():
    sock = FakeSocket(["[1]", "42", "not json", {"type": "connected", "clientId": "c9"}], close_code=1008)
    client = RealtimeClient(api_key="key", reconnect_delay=0)
    seen = _recorder(client, "connected", "error")

    with patch(WS_CONNECT, AsyncMock(return_value=sock)):
        await client.connect()
        await client._reader

    assert client.client_id == "c9"
    assert [event for event, _ in seen] == ["connected", "error"]


@pytest.mark.asyncio
async def test_disconnect_stops_reconnection():
    sock = FakeSocket(stay_open=True)
    client = RealtimeClient(api_key="k", reconnect_delay=0)
    seen = _recorder(client, "reconnecting")

    with patch(WS_CONNECT, AsyncMock(return_value=sock)) as connect:
        await client.connect()
        reader = client._reader
        await client.disconnect()
        with pytest.raises(asyncio.CancelledError):
            await reader

    assert connect.await_count == 1
    assert seen == []
    assert client.get_status()["is_connected"] is False


@pytest.mark.asyncio
async def test_send_message_over_socket():
    sock = FakeSocket(stay_open=True)
    client = RealtimeClient(api_key="k", user_id="u1")

    with patch(WS_CONNECT, AsyncMock(return_value=sock)):
        await client.connect()
        result = await client.send_message("hello", thread_id="t1", project_id="p1", stream=True)
        await client.ping()
        await client.disconnect()

    assert result == {"sent": True, "mode": "websocket"}
    assert sock.sent == [
        {"type": "message", "content": "hello", "userId": "u1",
         "threadId": "t1", "projectId": "p1", "stream": True},
        {"type": "ping"},
    ]


@pytest.mark.asyncio
async def test_send_requires_connection():
    client = RealtimeClient(api_key="k")
    with pytest.raises(ChatRelayError, match="Not connected"):
        await client.send_message("hello")
    with pytest.raises(ValidationError):
        await client.send_message("")


# ---------------------------------------------------------------------------
# HTTP mode
# ---------------------------------------------------------------------------

def _http_client(status_code, payload):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    mock_client = AsyncMock()
    mock_client.request.return_value = resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.mark.asyncio
async def test_http_send_message():
    mock_client = _http_client(200, {"ok": True, "data": {
        "threadId": "t1",
        "messages": [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ],
    }})
    client = RealtimeClient(base_url="http://relay.test/", api_key="k", user_id="u1", mode="http")

    with patch(HTTP_CLIENT, return_value=mock_client):
        assert await client.connect() is False
        result = await client.send_message("hello", thread_id="t1")

    assert result["threadId"] == "t1"
    assert result["response"] == "hi there"
    assert result["mode"] == "http"
    args, kwargs = mock_client.request.await_args
    assert args == ("POST", "http://relay.test/api/chat")
    assert kwargs["json"] == {"message": "hello", "userId": "u1", "threadId": "t1"}
    assert kwargs["headers"]["X-API-Key"] == "k"


@pytest.mark.asyncio
async def test_http_error_envelope_raises():
    mock_client = _http_client(401, {"ok": False, "error": {"code": "AUTHENTICATION_ERROR",
                                                             "message": "Invalid API key"}})
    client = RealtimeClient(api_key="bad", mode="http")
    with patch(HTTP_CLIENT, return_value=mock_client):
        with pytest.raises(ChatRelayError) as exc_info:
            await client.get_chat_history("t1")
    assert exc_info.value.message == "Invalid API key"
    assert mock_client.request.await_args.kwargs["params"] == {"threadId": "t1"}


def test_update_config():
    client = RealtimeClient()
    client.update_config(api_key="new", base_url="http://other/", mode=None)
    assert client.api_key == "new"
    assert client.base_url == "http://other"
    assert client.mode == "websocket"
    assert client.get_status()["has_api_key"] is True
