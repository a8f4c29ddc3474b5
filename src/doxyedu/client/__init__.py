"""Browser-side tab management for proxied browsing contexts.

Usage:
    from doxyedu.client import PageLocation, create_browser

    browser = create_browser(document, engine, connection,
                             PageLocation("https:", "proxy.example"), service_workers)
    browser.ui.start()
"""

from doxyedu.client.browser import Browser, create_browser
from doxyedu.client.dom import Document, Element
from doxyedu.client.engine import PageLocation, wisp_url
from doxyedu.client.search import is_url, search
from doxyedu.client.serviceworker import ServiceWorkerRegistrar
from doxyedu.client.tabs import TabSession, TabSessionManager
from doxyedu.client.transport import TransportConnectionHolder
from doxyedu.client.ui import Binding, BrowserUI

__all__ = [
    "Browser",
    "create_browser",
    "Document",
    "Element",
    "PageLocation",
    "wisp_url",
    "is_url",
    "search",
    "ServiceWorkerRegistrar",
    "TabSession",
    "TabSessionManager",
    "TransportConnectionHolder",
    "Binding",
    "BrowserUI",
]
