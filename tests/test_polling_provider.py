"""
Tests for the submit-then-poll backend provider.
httpx.AsyncClient is patched; no network is used.
Run with: pytest tests/test_polling_provider.py
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatrelay.errors import (
    GenerationError,
    GenerationTimeout,
    ProviderUnavailable,
    UnparseableResponse,
)
from chatrelay.providers.extract import PLACEHOLDER_REPLY
from chatrelay.providers.polling import PollingBackendProvider
from chatrelay.storage.models import Message

PATCH_TARGET = "chatrelay.providers.polling.httpx.AsyncClient"


def _resp(status_code=200, json_data=None, json_error=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if json_error is not None:
        resp.json.side_effect = json_error
    else:
        resp.json.return_value = json_data
    return resp


def _mock_client(post=None, get=None):
    client = AsyncMock()
    if post is not None:
        client.post.side_effect = post if isinstance(post, list) else [post]
    if get is not None:
        client.get.side_effect = get
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _provider(**overrides):
    cfg = {
        "backend_url": "http://backend.test",
        "api_key": "secret",
        "poll_interval": 0,
        "timeout": 5,
    }
    cfg.update(overrides)
    p = PollingBackendProvider(cfg)
    p.is_initialized = True
    return p


HISTORY = [Message(role="user", content="status?")]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_running_running_complete_yields_response():
    p = _provider()
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-1"}),
        get=[
            _resp(json_data={"status": "running", "progress": 10}),
            _resp(json_data={"status": "running", "progress": 60}),
            _resp(json_data={"status": "complete", "response": "hi"}),
        ],
    )
    with patch(PATCH_TARGET, return_value=client):
        assert await p.generate(HISTORY) == "hi"

    assert client.get.await_count == 3
    status_url = client.get.await_args.args[0]
    assert status_url == "http://backend.test/api/chat/status/req-1"
    assert client.get.await_args.kwargs["headers"]["X-API-Key"] == "secret"


@pytest.mark.asyncio
async def test_error_status_raises_backend_message():
    p = _provider()
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-2"}),
        get=[
            _resp(json_data={"status": "running"}),
            _resp(json_data={"status": "error", "message": "boom"}),
        ],
    )
    with patch(PATCH_TARGET, return_value=client):
        with pytest.raises(GenerationError) as exc_info:
            await p.generate(HISTORY)

    assert str(exc_info.value) == "boom"
    assert p.get_last_error().type == "generation"
    # A failed generation does not take the provider offline.
    assert p.is_available()


@pytest.mark.asyncio
async def test_never_completing_job_times_out():
    p = _provider(timeout=0.05, poll_interval=0.01)

    async def always_running(*args, **kwargs):
        return _resp(json_data={"status": "running"})

    client = _mock_client(post=_resp(json_data={"requestId": "req-3"}), get=always_running)
    with patch(PATCH_TARGET, return_value=client):
        with pytest.raises(TimeoutError) as exc_info:
            await p.generate(HISTORY)

    assert isinstance(exc_info.value, GenerationTimeout)
    assert isinstance(exc_info.value, GenerationError)


@pytest.mark.asyncio
async def test_submit_payload_carries_history_attachment():
    p = _provider()
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-4"}),
        get=[_resp(json_data={"status": "complete", "response": "ok"})],
    )
    history = [
        Message(role="assistant", content="Hello!"),
        Message(role="user", content="what's the budget?"),
    ]
    with patch(PATCH_TARGET, return_value=client):
        await p.generate(history)

    url = client.post.await_args.args[0]
    payload = client.post.await_args.kwargs["json"]
    assert url == "http://backend.test/api/chat/send-streaming"
    assert payload["message"] == "what's the budget?"
    assert payload["userId"] == "chatrelay-user"
    assert payload["chatId"].startswith("chat_")
    attachment = payload["attachments"][0]
    assert attachment["type"] == "context"
    assert attachment["hidden"] is True
    assert attachment["body"]["previousMessages"] == [{"role": "assistant", "content": "Hello!"}]


@pytest.mark.asyncio
async def test_single_message_has_no_attachments():
    p = _provider()
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-5"}),
        get=[_resp(json_data={"status": "complete", "response": "ok"})],
    )
    with patch(PATCH_TARGET, return_value=client):
        await p.generate(HISTORY)
    assert "attachments" not in client.post.await_args.kwargs["json"]


@pytest.mark.asyncio
async def test_submit_failures_are_generation_errors():
    p = _provider()
    cases = [
        _resp(status_code=500, text="internal"),
        _resp(json_error=ValueError("not json")),
        _resp(json_data={"accepted": True}),
    ]
    for bad in cases:
        client = _mock_client(post=bad, get=[])
        with patch(PATCH_TARGET, return_value=client):
            with pytest.raises(GenerationError):
                await p.generate(HISTORY)
        client.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_status_non_json_is_generation_error():
    p = _provider()
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-6"}),
        get=[_resp(json_error=ValueError("garbage"))],
    )
    with patch(PATCH_TARGET, return_value=client):
        with pytest.raises(GenerationError):
            await p.generate(HISTORY)


@pytest.mark.asyncio
async def test_http_timeout_maps_to_generation_timeout():
    p = _provider()
    client = _mock_client(post=[httpx.ReadTimeout("slow")])
    with patch(PATCH_TARGET, return_value=client):
        with pytest.raises(GenerationTimeout):
            await p.generate(HISTORY)


@pytest.mark.asyncio
async def test_unmatched_shape_returns_placeholder_by_default():
    p = _provider()
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-7"}),
        get=[_resp(json_data={"status": "complete", "progress": 100})],
    )
    with patch(PATCH_TARGET, return_value=client):
        assert await p.generate(HISTORY) == PLACEHOLDER_REPLY


@pytest.mark.asyncio
async def test_unmatched_shape_raises_when_strict():
    p = _provider(strict_response_shapes=True)
    client = _mock_client(
        post=_resp(json_data={"requestId": "req-8"}),
        get=[_resp(json_data={"status": "complete", "progress": 100})],
    )
    with patch(PATCH_TARGET, return_value=client):
        with pytest.raises(UnparseableResponse):
            await p.generate(HISTORY)


@pytest.mark.asyncio
async def test_generate_when_unavailable():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    with pytest.raises(ProviderUnavailable):
        await p.generate(HISTORY)


@pytest.mark.asyncio
async def test_cancelling_generate_closes_client():
    p = _provider(poll_interval=0.01, timeout=30)

    async def always_running(*args, **kwargs):
        return _resp(json_data={"status": "running"})

    client = _mock_client(post=_resp(json_data={"requestId": "req-9"}), get=always_running)
    with patch(PATCH_TARGET, return_value=client):
        task = asyncio.ensure_future(p.generate(HISTORY))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    client.__aexit__.assert_awaited_once()
    polls = client.get.await_count
    await asyncio.sleep(0.05)
    assert client.get.await_count == polls


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_initialize_with_valid_verify():
    p = PollingBackendProvider({"backend_url": "http://backend.test", "api_key": "k"})
    client = _mock_client(get=[_resp(json_data={"valid": True})])
    with patch(PATCH_TARGET, return_value=client):
        assert await p.initialize() is True
    assert p.is_available()
    assert p.get_last_error() is None


@pytest.mark.asyncio
async def test_initialize_after_success_does_no_io():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    client = _mock_client(get=[_resp(json_data={"valid": True})])
    with patch(PATCH_TARGET, return_value=client) as cls:
        await p.initialize()
        await p.initialize()
    assert cls.call_count == 1


@pytest.mark.asyncio
async def test_concurrent_initialize_shares_one_attempt():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})

    async def slow_verify(*args, **kwargs):
        await asyncio.sleep(0.02)
        return _resp(json_data={"valid": True})

    client = _mock_client(get=slow_verify)
    with patch(PATCH_TARGET, return_value=client) as cls:
        results = await asyncio.gather(p.initialize(), p.initialize(), p.initialize())

    assert results == [True, True, True]
    assert cls.call_count == 1
    assert client.get.await_count == 1


@pytest.mark.asyncio
async def test_initialize_invalid_key_records_connection_test_error():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    client = _mock_client(get=[_resp(json_data={"valid": False})])
    with patch(PATCH_TARGET, return_value=client):
        assert await p.initialize() is False

    err = p.get_last_error()
    assert err.type == "connection_test"
    assert "offline mode" in err.user_message
    assert not p.is_available()


@pytest.mark.asyncio
async def test_initialize_probes_submit_when_verify_missing():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    client = _mock_client(
        get=[_resp(status_code=404)],
        post=_resp(status_code=400),
    )
    with patch(PATCH_TARGET, return_value=client):
        assert await p.initialize() is True


@pytest.mark.asyncio
async def test_initialize_probe_404_is_unreachable():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    client = _mock_client(get=[_resp(status_code=404)], post=_resp(status_code=404))
    with patch(PATCH_TARGET, return_value=client):
        assert await p.initialize() is False
    assert p.get_last_error().type == "connection_test"


@pytest.mark.asyncio
async def test_initialize_connect_error_is_recoverable():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    client = _mock_client(get=[httpx.ConnectError("refused")])
    with patch(PATCH_TARGET, return_value=client):
        assert await p.initialize() is False
    assert p.get_last_error().message == "Service unavailable"


@pytest.mark.asyncio
async def test_initialize_rejects_bad_url_without_network():
    for url in ("", "not a url", "ftp://backend.test"):
        p = PollingBackendProvider({"backend_url": url})
        with patch(PATCH_TARGET) as cls:
            assert await p.initialize() is False
        cls.assert_not_called()
        assert p.get_last_error().type == "validation"


@pytest.mark.asyncio
async def test_reset_allows_retry():
    p = PollingBackendProvider({"backend_url": "http://backend.test"})
    with patch(PATCH_TARGET, return_value=_mock_client(get=[httpx.ConnectError("down")])):
        assert await p.initialize() is False

    p.reset()
    assert p.get_last_error() is None
    with patch(PATCH_TARGET, return_value=_mock_client(get=[_resp(json_data={"valid": True})])):
        assert await p.initialize() is True


def test_status_and_info():
    p = PollingBackendProvider({"backend_url": "http://backend.test/"})
    status = p.get_status()
    assert status["provider"] == "backend"
    assert status["is_available"] is False
    assert p.get_provider_info()["backend_url"] == "http://backend.test"
    assert p.get_capabilities()["supports_chat"] is True
