"""Async HTTP client for the CloudVision resource and service APIs."""

import asyncio
import json
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import httpx

from ..errors import AuthError, UpstreamError
from ..utils.logging import get_logger
from .models import Approval, PartialEqFilter, StartChange

logger = get_logger(__name__)

AUTH_PATH = "/cvpservice/login/authenticate.do"
TAG_PATH = "/api/resources/tag/v2/Tag/all"
TAG_ASSIGNMENT_PATH = "/api/v3/services/arista.tag.v2.TagAssignmentService/GetAll"
DEVICE_ALL_PATH = "/api/resources/inventory/v1/Device/all"
DEVICE_PATH = "/api/resources/inventory/v1/Device"
CC_UPDATE_PATH = "/api/v3/services/ccapi.ChangeControl/Update"
CC_APPROVE_PATH = "/api/v3/services/ccapi.ChangeControl/AddApproval"
CC_START_PATH = "/api/v3/services/ccapi.ChangeControl/Start"


class ControlPlaneClient:
    """
    Bearer-token client for one CloudVision host.

    Every call is bounded by ``timeout``. Calls that are safe to repeat
    (reads, tag queries and the id-keyed change-control Update) are retried
    up to ``max_retries`` times on timeouts, transport failures and 5xx
    responses. AddApproval and Start are sent exactly once.
    """

    def __init__(
        self,
        host: str,
        port: int = 443,
        token: str | None = None,
        verify_tls: bool = True,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.token = token or None
        self.verify_tls = verify_tls
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "ControlPlaneClient":
        cvp = settings.cvp
        return cls(
            host=cvp.host,
            port=cvp.port,
            token=settings.cvp_bearer_token,
            verify_tls=cvp.verify_tls,
            timeout=cvp.timeout,
            max_retries=cvp.max_retries,
        )

    async def __aenter__(self) -> "ControlPlaneClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=self.verify_tls,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def build_url(self, path: str, **query: Any) -> str:
        """Assemble an absolute URL for ``path``; the only place URLs are built."""
        netloc = self.host if self.port == 443 else f"{self.host}:{self.port}"
        url = f"https://{netloc}/{path.lstrip('/')}"
        params = {k: v for k, v in query.items() if v is not None}
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    # -- Tokens --

    def load_token_file(self, filename: str | Path) -> None:
        """Load a pre-provisioned bearer token from a file."""
        path = Path(filename).expanduser()
        try:
            token = path.read_text().strip()
        except OSError as e:
            raise AuthError(f"Cannot read token file {path}: {e}") from e
        if not token:
            raise AuthError(f"Token file {path} is empty")
        self.token = token
        logger.info("Loaded CVP token from file", path=str(path))

    async def authenticate(self, username: str, password: str) -> str:
        """Exchange credentials for a session token (on-prem CVP only)."""
        if not username or not password:
            raise AuthError("CVP username and password are required")
        try:
            response = await self._get_client().post(
                self.build_url(AUTH_PATH),
                auth=(username, password),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"CVP authentication request failed: {e}", retryable=True) from e

        if response.status_code in (401, 403):
            raise AuthError("CVP rejected the supplied credentials")
        if not response.is_success:
            raise UpstreamError(
                f"CVP authentication returned HTTP {response.status_code}",
                status=response.status_code,
            )
        try:
            token = response.json()["cookie"]["Value"]
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamError("CVP authentication response had no session cookie") from e

        self.token = token
        logger.info("Authenticated to CVP", host=self.host, user=username)
        return token

    # -- Transport --

    def _headers(self) -> dict[str, str]:
        if not self.token:
            raise AuthError("No CVP token loaded")
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retry: bool = True,
    ) -> list[dict[str, Any]]:
        url = self.build_url(path, **(params or {}))
        headers = self._headers()
        attempts = self.max_retries + 1 if retry else 1
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._get_client().request(method, url, json=body, headers=headers)
            except httpx.TimeoutException as e:
                error = UpstreamError(f"{method} {path} timed out", retryable=True)
                error.__cause__ = e
            except httpx.TransportError as e:
                error = UpstreamError(f"{method} {path} failed: {e}", retryable=True)
                error.__cause__ = e
            else:
                if response.status_code in (401, 403):
                    raise AuthError(f"CVP rejected token for {path} (HTTP {response.status_code})")
                if response.is_success:
                    return self._decode_records(response.text, path)
                error = UpstreamError(
                    f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                    status=response.status_code,
                    retryable=response.status_code >= 500,
                )

            if not error.retryable or attempt >= attempts:
                raise error
            logger.warning(
                "Retrying control-plane call",
                method=method,
                path=path,
                attempt=attempt,
                error=str(error),
            )
            await asyncio.sleep(self.retry_backoff * attempt)

    @staticmethod
    def _decode_records(text: str, path: str) -> list[dict[str, Any]]:
        """
        Decode a response body into a flat list of records.

        Accepts a single JSON value or newline-delimited JSON, as the
        streaming GetAll endpoints return. ``result`` and ``value`` wrappers
        are removed so each record is the resource itself.
        """
        text = text.strip()
        if not text:
            return []
        try:
            items = [json.loads(text)]
        except json.JSONDecodeError:
            try:
                items = [json.loads(line) for line in text.splitlines() if line.strip()]
            except json.JSONDecodeError as e:
                raise UpstreamError(f"Malformed JSON from {path}: {e}") from e

        records: list[dict[str, Any]] = []
        for item in items:
            if isinstance(item, list):
                records.extend(_unwrap(i, path) for i in item)
            elif isinstance(item, dict) and isinstance(item.get("value"), list):
                records.extend(_unwrap(i, path) for i in item["value"])
            else:
                records.append(_unwrap(item, path))
        return records

    # -- Tags --

    async def query_tag_assignments(self, tag_filter: PartialEqFilter) -> list[dict[str, Any]]:
        """Return every tag assignment matching an equality filter."""
        body = tag_filter.to_wire()
        logger.debug("Querying tag assignments", filter=body)
        return await self._request("POST", TAG_ASSIGNMENT_PATH, body=body)

    async def get_tags(self, workspace_id: str = "") -> list[dict[str, Any]]:
        """List tags defined in a workspace."""
        body = PartialEqFilter.for_tag(None, None, workspace_id=workspace_id, element_type=None).to_wire()
        return await self._request("POST", TAG_PATH, body=body)

    # -- Inventory --

    async def get_all_devices(self) -> list[dict[str, Any]]:
        return await self._request("GET", DEVICE_ALL_PATH)

    async def get_device(self, device_id: str) -> dict[str, Any] | None:
        records = await self._request("GET", DEVICE_PATH, params={"key.deviceId": device_id})
        return records[0] if records else None

    # -- Change control --

    async def update_change_control(self, document: dict[str, Any]) -> list[dict[str, Any]]:
        """Create or replace a change control; keyed by its id, so repeats are harmless."""
        return await self._request("POST", CC_UPDATE_PATH, body=document)

    async def approve_change_control(self, approval: Approval) -> list[dict[str, Any]]:
        logger.info("Approving change control", cc_id=approval.cc_id)
        return await self._request("POST", CC_APPROVE_PATH, body=approval.to_wire(), retry=False)

    async def start_change_control(self, start: StartChange) -> list[dict[str, Any]]:
        logger.info("Starting change control", cc_id=start.cc_id)
        return await self._request("POST", CC_START_PATH, body=start.to_wire(), retry=False)


def _unwrap(item: Any, path: str) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise UpstreamError(f"Unexpected record from {path}: {item!r}")
    if "error" in item and "result" not in item and "value" not in item:
        error = item["error"]
        message = error.get("message") if isinstance(error, dict) else error
        raise UpstreamError(f"{path} reported an error: {message}")
    while True:
        if isinstance(item.get("result"), dict):
            item = item["result"]
        elif isinstance(item.get("value"), dict):
            item = item["value"]
        else:
            return item
