"""Shared fakes and fixtures for the gateway and the tab manager."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
from aiohttp.test_utils import unused_port

from doxyedu.client.dom import Document, Element
from doxyedu.client.engine import PageLocation
from doxyedu.client.serviceworker import ServiceWorkerRegistrar
from doxyedu.client.tabs import TabSessionManager
from doxyedu.client.transport import TransportConnectionHolder
from doxyedu.client.ui import (
    ADDRESS_ID,
    CONTENT_AREA_ID,
    ERROR_CODE_ID,
    ERROR_ID,
    FORM_ID,
    SEARCH_ENGINE_ID,
    TABS_CONTAINER_ID,
)
from doxyedu.core.config import GatewayConfig, RestartPolicy, TunnelProcessConfig

SEARCH_TEMPLATE = "https://search.test/?q=%s"


class FakeFrame:
    def __init__(self, fail_go: bool = False):
        self.element = Element("iframe")
        self.visits: list[str] = []
        self.fail_go = fail_go

    def go(self, url: str) -> None:
        if self.fail_go:
            raise RuntimeError("navigation refused")
        self.visits.append(url)


class FakeController:
    def __init__(self, engine: FakeEngine):
        self.engine = engine

    async def init(self) -> None:
        await self.engine.gate.wait()
        if self.engine.fail_init:
            raise RuntimeError("wasm failed to load")

    def create_frame(self) -> FakeFrame:
        frame = FakeFrame(fail_go=self.engine.fail_go)
        self.engine.frames.append(frame)
        return frame


class FakeEngine:
    """Proxy engine whose controller init can be held open with ``gate``."""

    def __init__(self):
        self.frames: list[FakeFrame] = []
        self.files: list[dict[str, str]] = []
        self.fail_init = False
        self.fail_go = False
        self.gate = asyncio.Event()
        self.gate.set()

    def create_controller(self, files: dict[str, str]) -> FakeController:
        self.files.append(files)
        return FakeController(self)


class FakeConnection:
    """Transport multiplexer connection that yields on every call."""

    def __init__(self, current: str | None = None):
        self.current = current
        self.set_calls: list[tuple[str, list]] = []
        self.fail_get = False

    async def get_transport(self) -> str | None:
        await asyncio.sleep(0)
        if self.fail_get:
            raise RuntimeError("worker unreachable")
        return self.current

    async def set_transport(self, module: str, options: list) -> None:
        await asyncio.sleep(0)
        self.set_calls.append((module, options))
        self.current = module


class FakeRegistration:
    def __init__(self, installing=None, waiting=None, active=None):
        self.installing = installing
        self.waiting = waiting
        self.active = active


class FakeServiceWorkers:
    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple[str, str, str]] = []
        self.error = error

    async def register(self, script: str, *, scope: str, update_via_cache: str) -> FakeRegistration:
        self.calls.append((script, scope, update_via_cache))
        if self.error is not None:
            raise self.error
        return FakeRegistration(active=object())


def build_document() -> Document:
    doc = Document()
    form = doc.body.append_child(Element("form", id=FORM_ID))
    form.append_child(Element("input", id=ADDRESS_ID))
    engine = form.append_child(Element("input", id=SEARCH_ENGINE_ID))
    engine.value = SEARCH_TEMPLATE
    doc.body.append_child(Element("p", id=ERROR_ID))
    doc.body.append_child(Element("pre", id=ERROR_CODE_ID))
    doc.body.append_child(Element("div", id=TABS_CONTAINER_ID))
    doc.body.append_child(Element("div", id=CONTENT_AREA_ID))
    return doc


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def location():
    return PageLocation("https:", "proxy.test")


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def service_workers():
    return FakeServiceWorkers()


@pytest.fixture
def holder(connection, location):
    return TransportConnectionHolder(connection, location)


@pytest.fixture
def manager(engine, holder, service_workers):
    return TabSessionManager(engine, holder, ServiceWorkerRegistrar(service_workers))


@pytest.fixture
def document():
    return build_document()


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def make_service_workers():
    return FakeServiceWorkers


@pytest.fixture
def site_dirs(tmp_path):
    """Public UI root plus one vendored asset directory."""
    public = tmp_path / "public"
    public.mkdir()
    (public / "index.html").write_text("<h1>DoxyEdu</h1>")
    (public / "404.html").write_text("<h1>custom not found</h1>")
    (public / "app.js").write_text("console.log('app');")
    (public / "scram").mkdir()
    (public / "scram" / "shadowed.js").write_text("// root copy")

    scram = tmp_path / "scram"
    scram.mkdir()
    (scram / "scramjet.all.js").write_text("// engine")

    (tmp_path / "secret.txt").write_text("top secret")
    return tmp_path


@pytest.fixture
def gateway_config(site_dirs):
    return GatewayConfig(
        host="127.0.0.1",
        port=unused_port(),
        public_dir=site_dirs / "public",
        scramjet_dir=site_dirs / "scram",
        epoxy_dir=site_dirs / "epoxy",
        baremux_dir=site_dirs / "baremux",
        tunnel=TunnelProcessConfig(restart_policy=RestartPolicy.NONE),
    )


@pytest.fixture
def fake_supervisor():
    supervisor = MagicMock()
    supervisor.start = AsyncMock()
    supervisor.kill = AsyncMock()
    return supervisor


@pytest.fixture
def fake_tunnel():
    tunnel = MagicMock()
    tunnel.route_request = AsyncMock()
    tunnel.close = AsyncMock()
    return tunnel
