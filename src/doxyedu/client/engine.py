"""Interfaces of the third-party components the tab manager drives.

The rewriting proxy engine, the transport multiplexer and the service worker
container live in the browser; only the operations used here are modelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from doxyedu.client.dom import Element

ENGINE_FILES = {
    "wasm": "/scram/scramjet.wasm.wasm",
    "all": "/scram/scramjet.all.js",
    "sync": "/scram/scramjet.sync.js",
}
TRANSPORT_MODULE = "/epoxy/index.mjs"
MULTIPLEXER_WORKER = "/baremux/worker.js"
SERVICE_WORKER_SCRIPT = "/sw.js"
TUNNEL_PATH = "/wisp/"


@dataclass(frozen=True)
class PageLocation:
    """Scheme and host of the page hosting the browser UI."""

    protocol: str
    host: str


def wisp_url(location: PageLocation) -> str:
    """Tunnel endpoint on the serving origin; secure pages get a secure socket."""
    scheme = "wss" if location.protocol == "https:" else "ws"
    return f"{scheme}://{location.host}{TUNNEL_PATH}"


class ProxyFrame(Protocol):
    """A navigable frame produced by the proxy engine."""

    @property
    def element(self) -> Element: ...

    def go(self, url: str) -> None: ...


class ProxyController(Protocol):
    async def init(self) -> None: ...

    def create_frame(self) -> ProxyFrame: ...


class ProxyEngine(Protocol):
    def create_controller(self, files: dict[str, str]) -> ProxyController: ...


class TransportConnection(Protocol):
    """Connection to the transport multiplexer worker."""

    async def get_transport(self) -> str | None: ...

    async def set_transport(self, module: str, options: list[dict[str, Any]]) -> None: ...


class ServiceWorkerRegistration(Protocol):
    installing: Any
    waiting: Any
    active: Any


class ServiceWorkerContainer(Protocol):
    async def register(
        self, script: str, *, scope: str, update_via_cache: str
    ) -> ServiceWorkerRegistration: ...
