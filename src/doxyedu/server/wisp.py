"""Tunnel backend routing for WebSocket upgrades under the tunnel prefix.

The gateway does not speak the tunnel protocol. ``WispRelay`` accepts the
browser's WebSocket and relays frames, unchanged, to the supervised backend
process selected by ``WispOptions.curl_host``.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog
from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType, web
from yarl import URL

from doxyedu.core.config import WispOptions
from doxyedu.errors import UpgradeDispatchError

logger = structlog.get_logger()

_HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "upgrade",
        "connection",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
    }
)


class TunnelBackend(Protocol):
    """Something that can take over an upgrade request for the tunnel prefix."""

    async def route_request(self, request: web.Request) -> web.StreamResponse: ...

    async def close(self) -> None: ...


def backend_ws_url(curl_host: str) -> URL:
    """Translate the backend's HTTP address into its WebSocket address."""
    url = URL(curl_host)
    scheme = {"http": "ws", "https": "wss"}.get(url.scheme, url.scheme)
    return url.with_scheme(scheme)


class WispRelay:
    """Relays tunnel WebSockets to the backend process."""

    def __init__(self, options: WispOptions) -> None:
        self.options = options
        self._session: ClientSession | None = None
        self._active: set[web.WebSocketResponse] = set()

    @property
    def backend_url(self) -> URL:
        return backend_ws_url(self.options.curl_host)

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
        return self._session

    def _target(self, request: web.Request) -> URL:
        return self.backend_url.with_path(request.path).with_query(request.query)

    async def route_request(self, request: web.Request) -> web.StreamResponse:
        """Connect to the backend, then accept and relay the client WebSocket.

        Raises:
            UpgradeDispatchError: The backend refused or could not be reached.
                Nothing has been written to the client at that point.
        """
        protocols = [
            p.strip()
            for p in request.headers.get("Sec-WebSocket-Protocol", "").split(",")
            if p.strip()
        ]
        headers = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in _HANDSHAKE_HEADERS
        }
        headers["X-Forwarded-For"] = request.remote or ""

        session = await self._get_session()
        target = self._target(request)
        try:
            backend = await session.ws_connect(
                target,
                protocols=protocols,
                headers=headers,
                max_msg_size=0,
            )
        except (ClientError, OSError) as e:
            raise UpgradeDispatchError(request.path, e) from e

        client = web.WebSocketResponse(
            protocols=[backend.protocol] if backend.protocol else (),
            max_msg_size=0,
        )
        self._active.add(client)
        try:
            await client.prepare(request)
            logger.debug("Tunnel stream opened", path=request.path, peer=request.remote)
            await asyncio.gather(
                self._pipe(client, backend),
                self._pipe(backend, client),
            )
        finally:
            self._active.discard(client)
            await backend.close()
            if not client.closed:
                await client.close()
            logger.debug("Tunnel stream closed", path=request.path)

        return client

    async def _pipe(
        self,
        source: web.WebSocketResponse | ClientWebSocketResponse,
        dest: web.WebSocketResponse | ClientWebSocketResponse,
    ) -> None:
        async for msg in source:
            if msg.type == WSMsgType.BINARY:
                await dest.send_bytes(msg.data)
            elif msg.type == WSMsgType.TEXT:
                await dest.send_str(msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("Tunnel stream error", error=str(source.exception()))
                break
        if not dest.closed:
            await dest.close()

    async def close(self) -> None:
        for ws in list(self._active):
            await ws.close()
        self._active.clear()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
