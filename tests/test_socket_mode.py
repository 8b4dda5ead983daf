"""Tests for the Socket Mode session."""

import asyncio
import json
from types import SimpleNamespace

import aiohttp
import pytest
from slack_sdk.errors import SlackApiError

from portbot.channels.socket_mode import SocketModeSession
from portbot.errors import AuthError, ConnectionClosed, SessionConnectionError, UpstreamError

HELLO = json.dumps({"type": "hello", "num_connections": 1, "connection_info": {"app_id": "A1"}})


def text(data):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


class FakeWebSocket:
    def __init__(self, frames):
        self.frames = list(frames)
        self.sent: list[str] = []
        self.closed = False

    async def receive(self, timeout=None):
        if not self.frames:
            return SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None)
        return self.frames.pop(0)

    async def send_str(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def exception(self):
        return None


class FakeHttp:
    def __init__(self, ws):
        self.ws = ws
        self.urls: list[str] = []

    async def ws_connect(self, url, heartbeat=None):
        self.urls.append(url)
        return self.ws

    async def close(self):
        pass


class FakeWebClient:
    def __init__(self, url="wss://wss-primary.slack.com/link/?ticket=abc", error=None):
        self.url = url
        self.error = error
        self.calls = 0

    async def apps_connections_open(self, app_token):
        self.calls += 1
        if self.error:
            raise SlackApiError("failed", {"ok": False, "error": self.error})
        return {"ok": True, "url": self.url}


def make_session(frames, web=None, token="xapp-test"):
    ws = FakeWebSocket(frames)
    session = SocketModeSession(token, web_client=web or FakeWebClient(), http_session=FakeHttp(ws))
    return session, ws


def test_open_consumes_hello_frame():
    """The hello frame is read during open and not returned by receive."""
    session, ws = make_session([text(HELLO), text('{"type": "slash_commands"}')])

    async def go():
        await session.open()
        return await session.receive()

    assert asyncio.run(go()) == '{"type": "slash_commands"}'
    assert session.hello.app_id == "A1"
    assert session.is_open


def test_open_connects_to_the_issued_url():
    web = FakeWebClient(url="wss://example.test/socket")
    session, _ = make_session([text(HELLO)], web=web)
    asyncio.run(session.open())
    assert session._http.urls == ["wss://example.test/socket"]
    assert web.calls == 1


def test_open_fails_when_first_frame_is_not_hello():
    session, ws = make_session([text('{"type": "disconnect", "reason": "warning"}')])
    with pytest.raises(SessionConnectionError):
        asyncio.run(session.open())
    assert ws.closed


def test_open_fails_when_socket_closes_before_hello():
    session, _ = make_session([])
    with pytest.raises(SessionConnectionError):
        asyncio.run(session.open())


def test_rejected_token_is_auth_error():
    session, _ = make_session([text(HELLO)], web=FakeWebClient(error="invalid_auth"))
    with pytest.raises(AuthError):
        asyncio.run(session.open())


def test_other_slack_error_is_connection_error():
    session, _ = make_session([text(HELLO)], web=FakeWebClient(error="ratelimited"))
    with pytest.raises(SessionConnectionError):
        asyncio.run(session.open())


def test_missing_token_is_auth_error():
    web = FakeWebClient()
    session, _ = make_session([text(HELLO)], web=web, token="")
    with pytest.raises(AuthError):
        asyncio.run(session.open())
    assert web.calls == 0


def test_disconnect_frame_closes_the_receive_loop():
    session, _ = make_session([text(HELLO), text('{"type": "disconnect", "reason": "refresh_requested"}')])

    async def go():
        await session.open()
        await session.receive()

    with pytest.raises(ConnectionClosed) as exc:
        asyncio.run(go())
    assert "refresh_requested" in exc.value.reason


def test_closed_socket_raises_connection_closed():
    session, _ = make_session([text(HELLO)])

    async def go():
        await session.open()
        await session.receive()

    with pytest.raises(ConnectionClosed):
        asyncio.run(go())


def test_ping_frames_are_skipped():
    ping = SimpleNamespace(type=aiohttp.WSMsgType.PING, data=b"")
    session, _ = make_session([text(HELLO), ping, text('{"x": 1}')])

    async def go():
        await session.open()
        return await session.receive()

    assert asyncio.run(go()) == '{"x": 1}'


def test_acknowledge_sends_envelope_id():
    session, ws = make_session([text(HELLO)])

    async def go():
        await session.open()
        await session.acknowledge("env-1")
        await session.acknowledge("env-2", {"text": "done"})

    asyncio.run(go())
    assert [json.loads(f) for f in ws.sent] == [
        {"envelope_id": "env-1"},
        {"envelope_id": "env-2", "payload": {"text": "done"}},
    ]


def test_is_duplicate_tracks_envelope_ids():
    session, _ = make_session([])
    assert session.is_duplicate("env-1") is False
    assert session.is_duplicate("env-1") is True
    assert session.is_duplicate("env-2") is False


def test_closed_session_cannot_be_reopened():
    session, _ = make_session([text(HELLO)])

    async def go():
        await session.open()
        await session.close()
        await session.open()

    with pytest.raises(SessionConnectionError):
        asyncio.run(go())
    assert not session.is_open


def test_send_after_close_raises():
    session, _ = make_session([text(HELLO)])

    async def go():
        await session.open()
        await session.close()
        await session.acknowledge("env-1")

    with pytest.raises(ConnectionClosed):
        asyncio.run(go())


class FakeWebhook:
    posted: list[tuple[str, dict]] = []
    status_code = 200

    def __init__(self, url, timeout=None):
        self.url = url

    async def send(self, text=None, blocks=None):
        FakeWebhook.posted.append((self.url, {"text": text, "blocks": blocks}))
        return SimpleNamespace(status_code=FakeWebhook.status_code, body="")


def test_post_response_sends_blocks(monkeypatch):
    monkeypatch.setattr("portbot.channels.socket_mode.AsyncWebhookClient", FakeWebhook)
    monkeypatch.setattr(FakeWebhook, "posted", [])
    session, _ = make_session([])

    asyncio.run(session.post_response("https://hooks.slack.com/x", "hello"))

    url, body = FakeWebhook.posted[0]
    assert url == "https://hooks.slack.com/x"
    assert body["text"] == "hello"
    assert body["blocks"][0]["text"]["text"] == "hello"


def test_post_response_error_status_is_upstream_error(monkeypatch):
    monkeypatch.setattr("portbot.channels.socket_mode.AsyncWebhookClient", FakeWebhook)
    monkeypatch.setattr(FakeWebhook, "posted", [])
    monkeypatch.setattr(FakeWebhook, "status_code", 404)
    session, _ = make_session([])

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(session.post_response("https://hooks.slack.com/x", "hello"))
    assert exc.value.status == 404


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("Cannot write to closing transport"),
        aiohttp.ClientConnectionError("connection lost"),
    ],
)
def test_send_on_closing_transport_raises_connection_closed(error):
    session, ws = make_session([text(HELLO)])

    async def failing_send(data):
        raise error

    async def go():
        await session.open()
        ws.send_str = failing_send
        await session.acknowledge("env-1")

    with pytest.raises(ConnectionClosed) as exc:
        asyncio.run(go())
    assert exc.value.__cause__ is error


def test_post_response_timeout_is_upstream_error(monkeypatch):
    class SlowWebhook(FakeWebhook):
        async def send(self, text=None, blocks=None):
            raise asyncio.TimeoutError()

    monkeypatch.setattr("portbot.channels.socket_mode.AsyncWebhookClient", SlowWebhook)
    session, _ = make_session([])

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(session.post_response("https://hooks.slack.com/x", "hello"))
    assert exc.value.retryable is True
