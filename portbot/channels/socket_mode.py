"""Slack Socket Mode session: one-time URL, websocket, frames in and out."""

import asyncio
from typing import Any

import aiohttp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient
from slack_sdk.webhook.async_client import AsyncWebhookClient

from ..errors import AuthError, ConnectionClosed, ParseError, SessionConnectionError, UpstreamError
from ..utils.logging import get_logger
from .envelopes import DisconnectEvent, HelloEvent, build_ack, build_blocks, parse_envelope

logger = get_logger(__name__)

_AUTH_ERRORS = {"invalid_auth", "not_authed", "account_inactive", "token_revoked", "not_allowed_token_type"}


class SocketModeSession:
    """
    One Socket Mode connection.

    A session is opened once and closed once. Reconnecting means building a
    new SocketModeSession; nothing here retries or reopens by itself.
    """

    def __init__(
        self,
        app_token: str,
        api_base_url: str = "https://slack.com/api/",
        open_timeout: float = 10.0,
        web_client: AsyncWebClient | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._app_token = app_token
        self._open_timeout = open_timeout
        self._web = web_client or AsyncWebClient(
            token=app_token,
            base_url=api_base_url.rstrip("/") + "/",
            timeout=int(open_timeout),
        )
        self._http = http_session
        self._owns_http = http_session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._seen_envelopes: set[str] = set()
        self._closed = False
        self.hello: HelloEvent | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closed

    async def open(self) -> "SocketModeSession":
        """Request a connection URL, connect, and consume the hello frame."""
        if self._closed:
            raise SessionConnectionError("Session was closed; create a new one to reconnect")
        if not self._app_token:
            raise AuthError("Slack app-level token is not configured")

        try:
            url = await self._request_connection_url()
            if self._http is None:
                self._http = aiohttp.ClientSession()
            self._ws = await self._http.ws_connect(url, heartbeat=30.0)
            first = await self._ws.receive(timeout=self._open_timeout)
            if first.type != aiohttp.WSMsgType.TEXT:
                raise SessionConnectionError(f"Expected hello frame, got {first.type.name}")
            envelope = parse_envelope(first.data)
            if not isinstance(envelope, HelloEvent):
                raise SessionConnectionError(f"Expected hello frame, got {type(envelope).__name__}")
        except (AuthError, SessionConnectionError):
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise SessionConnectionError(f"Failed to open Socket Mode session: {e}") from e

        self.hello = envelope
        logger.info("Socket Mode session open", app_id=envelope.app_id, connections=envelope.num_connections)
        return self

    async def _request_connection_url(self) -> str:
        try:
            response = await self._web.apps_connections_open(app_token=self._app_token)
        except SlackApiError as e:
            error = e.response.get("error", "unknown_error")
            if error in _AUTH_ERRORS:
                raise AuthError(f"Slack rejected the app token: {error}") from e
            raise SessionConnectionError(f"apps.connections.open failed: {error}") from e

        url = response.get("url")
        if not url:
            raise SessionConnectionError("apps.connections.open returned no url")
        return url

    async def receive(self) -> str:
        """Block until the next text frame. Raises ConnectionClosed when the socket goes away."""
        if self._ws is None or self._closed:
            raise ConnectionClosed("session is not open")

        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                disconnect = _as_disconnect(msg.data)
                if disconnect is not None:
                    logger.info("Slack requested disconnect", reason=disconnect.reason)
                    raise ConnectionClosed(f"disconnect requested: {disconnect.reason}")
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type in (aiohttp.WSMsgType.PING, aiohttp.WSMsgType.PONG):
                continue
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionClosed(f"websocket error: {self._ws.exception()}")
            raise ConnectionClosed(f"websocket {msg.type.name.lower()}")

    async def send(self, data: str) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionClosed("cannot send on a closed session")
        try:
            await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectionClosed(f"send failed: {e}") from e

    async def acknowledge(self, envelope_id: str, payload: dict[str, Any] | None = None) -> None:
        await self.send(build_ack(envelope_id, payload))
        logger.debug("Acknowledged envelope", envelope_id=envelope_id, with_payload=payload is not None)

    def is_duplicate(self, envelope_id: str) -> bool:
        """True if this envelope id was already seen on this session; records it otherwise."""
        if envelope_id in self._seen_envelopes:
            return True
        self._seen_envelopes.add(envelope_id)
        return False

    async def post_response(self, url: str, text: str) -> None:
        """POST a reply to a per-interaction callback URL. Works after the session has closed."""
        webhook = AsyncWebhookClient(url, timeout=int(self._open_timeout))
        message = build_blocks(text)
        try:
            response = await webhook.send(text=message["text"], blocks=message["blocks"])
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"response_url POST failed: {e}", retryable=True) from e
        if response.status_code >= 400:
            raise UpstreamError(
                f"response_url returned HTTP {response.status_code}: {str(response.body)[:200]}",
                status=response.status_code,
            )

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._http is not None and self._owns_http:
            await self._http.close()
            self._http = None
        logger.debug("Socket Mode session closed")


def _as_disconnect(data: str) -> DisconnectEvent | None:
    try:
        envelope = parse_envelope(data)
    except ParseError:
        return None
    return envelope if isinstance(envelope, DisconnectEvent) else None
