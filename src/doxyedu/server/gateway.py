"""Gateway server: static assets, tunnel upgrades and the backend lifecycle."""

from __future__ import annotations

import asyncio
import socket
from enum import Enum

import structlog
from aiohttp import web

from doxyedu.core.config import GatewayConfig
from doxyedu.errors import GatewayBindError, UpgradeDispatchError
from doxyedu.server.static import StaticResolver
from doxyedu.server.supervisor import TunnelSupervisor
from doxyedu.server.wisp import TunnelBackend, WispRelay

logger = structlog.get_logger()

ISOLATION_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Embedder-Policy": "require-corp",
}


class GatewayState(Enum):
    STARTING = "starting"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"


def is_upgrade_request(request: web.BaseRequest) -> bool:
    """Connection header may carry several tokens (e.g. "keep-alive, Upgrade")."""
    connection_tokens = {
        t.strip() for t in request.headers.get("Connection", "").lower().split(",")
    }
    return "upgrade" in connection_tokens and bool(request.headers.get("Upgrade"))


def _terminate(request: web.BaseRequest) -> web.Response:
    """Drop the connection without writing a response.

    The returned response is never sent: writing to the closed transport is
    discarded by aiohttp.
    """
    transport = request.transport
    if transport is not None and not transport.is_closing():
        transport.close()
    return web.Response(status=400)


class Gateway:
    """Single listening socket multiplexing static HTTP and tunnel upgrades."""

    def __init__(
        self,
        config: GatewayConfig,
        resolver: StaticResolver | None = None,
        tunnel: TunnelBackend | None = None,
        supervisor: TunnelSupervisor | None = None,
    ):
        self.config = config
        self.resolver = resolver or StaticResolver.from_config(config)
        self.tunnel: TunnelBackend = tunnel or WispRelay(config.wisp)
        self.supervisor = supervisor or TunnelSupervisor(
            config.tunnel, on_fatal=self._on_tunnel_fatal
        )
        self._state = GatewayState.STARTING
        self._runner: web.AppRunner | None = None
        self._closed = asyncio.Event()
        self._started = asyncio.Event()
        self._started.set()
        self._shutdown_task: asyncio.Future | None = None
        self._exit_code = 0

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def bound_port(self) -> int | None:
        """Port actually bound (differs from the config when it asked for 0)."""
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            if isinstance(address, tuple):
                return address[1]
        return None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.on_response_prepare.append(self._apply_isolation_headers)
        app.router.add_route("*", "/{path:.*}", self.dispatch)
        return app

    async def _apply_isolation_headers(
        self, request: web.Request, response: web.StreamResponse
    ) -> None:
        if isinstance(response, web.WebSocketResponse):
            return
        response.headers.update(ISOLATION_HEADERS)

    async def dispatch(self, request: web.Request) -> web.StreamResponse:
        if is_upgrade_request(request):
            return await self._dispatch_upgrade(request)
        return await self.resolver.handle(request)

    async def _dispatch_upgrade(self, request: web.Request) -> web.StreamResponse:
        if not request.path.startswith(self.config.tunnel_prefix):
            logger.debug("Rejected upgrade", path=request.path, peer=request.remote)
            return _terminate(request)

        try:
            return await self.tunnel.route_request(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e if isinstance(e, UpgradeDispatchError) else UpgradeDispatchError(request.path, e)
            logger.error(
                "Tunnel upgrade failed",
                path=request.path,
                peer=request.remote,
                error=str(error.cause or error),
            )
            return _terminate(request)

    async def start(self) -> None:
        """Spawn the tunnel backend and start listening.

        A shutdown requested while this is suspended wins: the socket is not
        opened (or is closed again) and the state never becomes SERVING.

        Raises:
            GatewayBindError: The listening socket could not be bound. The
                tunnel backend has already been stopped when this is raised.
        """
        if self._state is GatewayState.SHUTTING_DOWN:
            return
        self._state = GatewayState.STARTING
        self._started.clear()
        try:
            await self._start()
        finally:
            self._started.set()

    async def _start(self) -> None:
        try:
            await self.supervisor.start()
        except OSError as e:
            logger.error(
                "Failed to start tunnel process",
                command=" ".join(self.config.tunnel.command()),
                error=str(e),
            )
        if self._state is GatewayState.SHUTTING_DOWN:
            return

        self._runner = web.AppRunner(self.build_app(), handle_signals=False)
        await self._runner.setup()
        if self._state is GatewayState.SHUTTING_DOWN:
            return

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        try:
            await site.start()
        except OSError as e:
            logger.error(
                "Failed to bind listening socket",
                host=self.config.host,
                port=self.config.port,
                error=str(e),
            )
            await self.supervisor.kill()
            await self._runner.cleanup()
            self._runner = None
            raise GatewayBindError(self.config.host, self.config.port, e) from e
        if self._state is GatewayState.SHUTTING_DOWN:
            logger.info("Shutdown requested during startup")
            return

        self._state = GatewayState.SERVING
        logger.info(
            "Gateway started",
            host=self.config.host,
            port=self.bound_port,
            tunnel_prefix=self.config.tunnel_prefix,
        )

    def listen_urls(self) -> list[str]:
        port = self.bound_port or self.config.port
        return [f"http://localhost:{port}", f"http://{socket.gethostname()}:{port}"]

    def request_shutdown(self, exit_code: int = 0) -> asyncio.Future | None:
        """Schedule a shutdown from a signal handler or callback.

        Returns the shutdown task, or None when a shutdown is already underway.
        """
        if self._shutdown_task is not None or self._state is GatewayState.SHUTTING_DOWN:
            logger.debug("Shutdown already in progress")
            return None
        self._shutdown_task = asyncio.ensure_future(self.shutdown(exit_code))
        return self._shutdown_task

    async def shutdown(self, exit_code: int = 0) -> None:
        """Kill the tunnel backend, then stop accepting connections.

        A start still in progress is allowed to finish first, so that the
        child it spawned and the socket it bound are released here.
        """
        if self._state is GatewayState.SHUTTING_DOWN:
            return
        self._state = GatewayState.SHUTTING_DOWN
        self._exit_code = exit_code
        logger.info("Shutting down gateway", exit_code=exit_code)

        try:
            await self._started.wait()
            await self.supervisor.kill()
            await self.tunnel.close()
            if self._runner is not None:
                await self._runner.cleanup()
        finally:
            self._closed.set()
            logger.info("Gateway stopped")

    async def wait_closed(self) -> int:
        """Block until shutdown completes and return the process exit status."""
        await self._closed.wait()
        return self._exit_code

    def _on_tunnel_fatal(self, exit_code: int | None) -> None:
        logger.error("Tunnel backend is down for good, stopping gateway", exit_code=exit_code)
        self.request_shutdown(exit_code=1)
