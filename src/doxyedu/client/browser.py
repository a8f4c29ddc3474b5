"""Composition root for one browser context.

Everything is built once here and handed down by reference; there is no
module-level tab manager.
"""

from __future__ import annotations

from dataclasses import dataclass

from doxyedu.client.dom import Document
from doxyedu.client.engine import PageLocation, ProxyEngine, ServiceWorkerContainer, TransportConnection
from doxyedu.client.serviceworker import ServiceWorkerRegistrar
from doxyedu.client.tabs import TabSessionManager
from doxyedu.client.transport import TransportConnectionHolder
from doxyedu.client.ui import DEFAULT_HOME_URL, BrowserUI


@dataclass
class Browser:
    document: Document
    transport: TransportConnectionHolder
    registrar: ServiceWorkerRegistrar
    manager: TabSessionManager
    ui: BrowserUI


def create_browser(
    document: Document,
    engine: ProxyEngine,
    connection: TransportConnection,
    location: PageLocation,
    service_workers: ServiceWorkerContainer | None,
    home_url: str = DEFAULT_HOME_URL,
) -> Browser:
    """Wire the tab manager and UI controller for ``document``."""
    transport = TransportConnectionHolder(connection, location)
    registrar = ServiceWorkerRegistrar(service_workers)
    manager = TabSessionManager(engine, transport, registrar)
    ui = BrowserUI(document, manager, home_url=home_url)
    return Browser(
        document=document,
        transport=transport,
        registrar=registrar,
        manager=manager,
        ui=ui,
    )
