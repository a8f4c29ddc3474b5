"""Shared transport multiplexer connection for all tabs of a browser context."""

from __future__ import annotations

import asyncio

import structlog

from doxyedu.client.engine import TRANSPORT_MODULE, PageLocation, TransportConnection, wisp_url
from doxyedu.errors import TransportInitError

logger = structlog.get_logger()


class TransportConnectionHolder:
    """Points the multiplexer at the gateway's tunnel, at most once per need.

    Concurrent callers of ``ensure_configured`` share one in-flight attempt,
    so racing tab creations cause a single ``set_transport``. A failed
    attempt is forgotten and the next call retries.
    """

    def __init__(
        self,
        connection: TransportConnection,
        location: PageLocation,
        module: str = TRANSPORT_MODULE,
    ) -> None:
        self.connection = connection
        self.location = location
        self.module = module
        self._inflight: asyncio.Future | None = None
        self._configurations = 0

    @property
    def endpoint(self) -> str:
        return wisp_url(self.location)

    @property
    def configurations(self) -> int:
        """Number of times the transport was actually (re)set."""
        return self._configurations

    async def ensure_configured(self) -> None:
        """Make sure the desired transport is active.

        Raises:
            TransportInitError: Querying or setting the transport failed.
        """
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._configure())
            self._inflight.add_done_callback(self._forget)
        await asyncio.shield(self._inflight)

    def _forget(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            task.exception()

    async def _configure(self) -> None:
        try:
            current = await self.connection.get_transport()
            if current == self.module:
                return
            endpoint = self.endpoint
            await self.connection.set_transport(self.module, [{"wisp": endpoint}])
        except Exception as e:
            logger.error("Transport configuration failed", module=self.module, error=str(e))
            raise TransportInitError(e) from e

        self._configurations += 1
        logger.info("Transport configured", module=self.module, wisp=endpoint, previous=current)
