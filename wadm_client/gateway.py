"""
WADM - Outbound Call Gateway
============================
Every outbound call of the client goes through one OutboundGateway:
REST requests via ``invoke()`` and the terminal handshake via ``connect()``.

Contract:
    - The current token is read from the CredentialStore at send time and
      attached as ``Authorization: Bearer <token>`` (REST) or as the
      ``token`` query parameter (WebSocket handshake).
    - A 401 answer invalidates exactly the token that was sent, then
      surfaces as AuthorizationError. There is no refresh and no retry.
    - A 403 on the terminal handshake surfaces as AccessForbidden.

Usage:
    async with OutboundGateway("http://127.0.0.1:8080", store) as gateway:
        config = await gateway.get_json("/api/config")
        ws = await gateway.connect("/api/terminal/ws")
"""

import asyncio
import logging
from typing import Any, Callable
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import InvalidHandshake, InvalidStatus

from wadm.protocol import TOKEN_PARAM, Rejection, classify_status
from wadm_client.credentials import CredentialStore
from wadm_client.errors import AccessForbidden, AuthorizationError, GatewayError


logger = logging.getLogger(__name__)


class OutboundGateway:
    """
    Explicit wrapper for every outbound call.

    Attributes:
        base_url: http(s) URL of the WADM server.
        store:    CredentialStore holding the current token.
    """

    def __init__(
        self,
        base_url: str,
        store: CredentialStore,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        connect: Callable[..., Any] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self._client = httpx.AsyncClient(
            base_url=self.base_url, transport=transport, timeout=timeout
        )
        self._connect = connect or ws_connect

    async def __aenter__(self) -> "OutboundGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- REST ------------------------------------------------------------------

    async def invoke(self, request: httpx.Request) -> httpx.Response:
        """
        Send a request with the current credential attached.

        Raises:
            AuthorizationError: The server answered 401. The token that was
                sent has been invalidated.
        """
        token = self.store.token
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        else:
            request.headers.pop("Authorization", None)

        response = await self._client.send(request)

        if response.status_code == 401:
            await response.aread()
            self.authorization_failed(token)
            raise AuthorizationError(_detail(response), status_code=401)

        return response

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self.invoke(self._client.build_request(method, path, **kwargs))

    async def get_json(self, path: str) -> Any:
        """GET a JSON document; non-2xx answers raise httpx.HTTPStatusError."""
        response = await self.request("GET", path)
        response.raise_for_status()
        return response.json()

    async def send_json(self, method: str, path: str, payload: dict) -> Any:
        response = await self.request(method, path, json=payload)
        response.raise_for_status()
        return response.json()

    def authorization_failed(self, token: str | None) -> None:
        """Drop ``token`` from the store if it is still current."""
        if self.store.invalidate(token):
            logger.warning("Server rejected the session credential; logged out")

    # -- Terminal handshake ----------------------------------------------------

    def websocket_uri(self, path: str) -> str:
        """ws(s):// URI for ``path`` carrying the current token as a query parameter."""
        return self._websocket_uri(path, self.store.token)

    async def connect(self, path: str, **kwargs):
        """
        Open a WebSocket through the authenticated handshake.

        Raises:
            AuthorizationError: Handshake refused with 401 (token invalidated).
            AccessForbidden:    Handshake refused with 403 (developer mode off).
            GatewayError:       Any other handshake or network failure.
        """
        token = self.store.token
        uri = self._websocket_uri(path, token)

        try:
            return await self._connect(uri, **kwargs)
        except InvalidStatus as e:
            status = e.response.status_code
            body = e.response.body or b""
            rejection = classify_status(status, body)
            message = body.decode("utf-8", errors="replace") or f"HTTP {status}"
            if rejection is Rejection.UNAUTHORIZED:
                self.authorization_failed(token)
                raise AuthorizationError(message, status_code=status) from e
            if rejection is Rejection.FORBIDDEN:
                raise AccessForbidden(message, status_code=status) from e
            raise GatewayError(f"Handshake refused: {message}", status_code=status) from e
        except (InvalidHandshake, OSError, asyncio.TimeoutError) as e:
            raise GatewayError(f"Could not connect to {self.base_url}: {e}") from e

    def _websocket_uri(self, path: str, token: str | None) -> str:
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        query = urlencode({TOKEN_PARAM: token}) if token else ""
        return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/") + path, query, ""))


def _detail(response: httpx.Response) -> str:
    """Extract FastAPI's ``detail`` message, falling back to the raw body."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict) and "detail" in data:
        return str(data["detail"])
    return str(data)
