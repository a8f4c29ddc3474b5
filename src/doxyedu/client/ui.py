"""Browser UI controller: address bar, tab strip and tab content areas.

DOM events are routed through an explicit table of bindings, so what the
controller reacts to can be listed and tested without a browser.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

import structlog

from doxyedu.client.dom import Document, Element
from doxyedu.client.search import search
from doxyedu.client.tabs import TabSessionManager
from doxyedu.errors import DoxyEduError, TabClosedError

logger = structlog.get_logger()

DEFAULT_HOME_URL = "https://doxyedu.dpdns.org"
DEFAULT_SEARCH_ENGINE = "https://duckduckgo.com/?q=%s"

FORM_ID = "browser-sj-form"
ADDRESS_ID = "browser-sj-address"
ERROR_ID = "browser-sj-error"
ERROR_CODE_ID = "browser-sj-error-code"
SEARCH_ENGINE_ID = "browser-sj-search-engine"
TABS_CONTAINER_ID = "browser-tabs-container"
CONTENT_AREA_ID = "browser-content-area"


@dataclass(frozen=True)
class Binding:
    """Routes an event whose target satisfies ``match`` to ``handler``.

    ``match`` returns the element the handler should act on, or None.
    """

    event: str
    name: str
    match: Callable[[Element], Element | None]
    handler: Callable[[Element], Awaitable[None]]


def tab_title(url: str) -> str:
    return urlsplit(url).hostname or url


def _tab_element_of(target: Element) -> Element | None:
    return target.closest(lambda node: node.has_class("browser-tab"))


def _close_button_tab(target: Element) -> Element | None:
    if not target.has_class("tab-close"):
        return None
    return _tab_element_of(target)


class BrowserUI:
    """Keeps the tab strip and address bar in step with the tab sessions."""

    def __init__(
        self,
        document: Document,
        manager: TabSessionManager,
        home_url: str = DEFAULT_HOME_URL,
    ):
        self.document = document
        self.manager = manager
        self.home_url = home_url

        self.form = self._require(FORM_ID)
        self.address = self._require(ADDRESS_ID)
        self.tabs_container = self._require(TABS_CONTAINER_ID)
        self.content_area = self._require(CONTENT_AREA_ID)
        self.error = document.get_element_by_id(ERROR_ID)
        self.error_code = document.get_element_by_id(ERROR_CODE_ID)
        self.search_engine = document.get_element_by_id(SEARCH_ENGINE_ID)

        self._tab_counter = 0
        self._active_tab_id: str | None = None
        self._loads: set[asyncio.Task] = set()

        self.bindings: tuple[Binding, ...] = (
            Binding("submit", "navigate", self._form_of, self._on_submit),
            Binding("click", "close-tab", _close_button_tab, self._on_close_click),
            Binding("click", "activate-tab", _tab_element_of, self._on_tab_click),
        )

    def _require(self, element_id: str) -> Element:
        element = self.document.get_element_by_id(element_id)
        if element is None:
            raise LookupError(f"Browser element #{element_id} not found")
        return element

    @property
    def active_tab_id(self) -> str | None:
        return self._active_tab_id

    async def dispatch(self, event: str, target: Element) -> bool:
        """Run the first binding matching the event. Returns whether one did."""
        for binding in self.bindings:
            if binding.event != event:
                continue
            element = binding.match(target)
            if element is not None:
                await binding.handler(element)
                return True
        return False

    async def settle(self) -> None:
        """Wait for every in-flight tab load."""
        while self._loads:
            await asyncio.gather(*list(self._loads), return_exceptions=True)

    def _form_of(self, target: Element) -> Element | None:
        return target if target is self.form else None

    async def _on_submit(self, form: Element) -> None:
        await self.submit()

    async def _on_close_click(self, tab: Element) -> None:
        self.close_tab(tab.dataset["tab_id"])

    async def _on_tab_click(self, tab: Element) -> None:
        self.set_active_tab(tab.dataset["tab_id"])

    def _tab_element(self, tab_id: str) -> Element | None:
        return self.tabs_container.find(
            lambda node: node.has_class("browser-tab") and node.dataset.get("tab_id") == tab_id
        )

    def _content_element(self, tab_id: str) -> Element | None:
        return self.document.get_element_by_id(f"tab-content-{tab_id}")

    def start(self) -> str:
        """Open the first tab on the home page."""
        return self.create_browser_tab()

    def create_browser_tab(self, url: str | None = None) -> str:
        """Add a strip entry and content area, activate it and start loading."""
        url = url or self.home_url
        self._tab_counter += 1
        tab_id = f"tab-{self._tab_counter}"

        tab = Element("div", classes=["browser-tab"])
        tab.dataset["tab_id"] = tab_id
        tab.append_child(Element("span", classes=["tab-title"], text=tab_title(url)))
        tab.append_child(Element("span", classes=["tab-close"], text="×"))
        self.tabs_container.append_child(tab)

        self.content_area.append_child(
            Element("div", id=f"tab-content-{tab_id}", classes=["tab-content"])
        )

        self.set_active_tab(tab_id)

        task = asyncio.ensure_future(self.load_tab_url(tab_id, url))
        self._loads.add(task)
        task.add_done_callback(self._loads.discard)
        return tab_id

    async def load_tab_url(self, tab_id: str, url: str) -> None:
        content = self._content_element(tab_id)
        if content is None:
            return
        content.clear()
        content.append_child(
            Element("div", classes=["tab-loading"], text="Loading via DoxyEdu proxy...")
        )

        try:
            frame = await self.manager.create_tab(tab_id, url)
        except TabClosedError:
            logger.debug("Tab closed before it finished loading", tab_id=tab_id)
            return
        except DoxyEduError as e:
            logger.error("Failed to load tab", tab_id=tab_id, url=url, error=str(e))
            self._render_error(tab_id, e)
            return

        self._show_frame(tab_id, frame)
        self.update_tab_title(tab_id, url)

    def _show_frame(self, tab_id: str, frame: Element) -> None:
        content = self._content_element(tab_id)
        if content is None:
            return
        content.clear()
        content.append_child(frame)

    def _render_error(self, tab_id: str, error: Exception) -> None:
        content = self._content_element(tab_id)
        if content is None:
            return
        content.clear()
        box = content.append_child(Element("div", classes=["tab-error"]))
        box.append_child(Element("p", text=f"Failed to load: {error}"))

    def update_tab_title(self, tab_id: str, url: str) -> None:
        tab = self._tab_element(tab_id)
        if tab is None:
            return
        title = tab.find(lambda node: node.has_class("tab-title"))
        if title is not None:
            title.text = tab_title(url)

    def set_active_tab(self, tab_id: str) -> None:
        tab = self._tab_element(tab_id)
        content = self._content_element(tab_id)
        if tab is None or content is None:
            return

        for node in self.document.query_by_class("browser-tab"):
            node.class_list.discard("active")
        for node in self.document.query_by_class("tab-content"):
            node.class_list.discard("active")

        tab.class_list.add("active")
        content.class_list.add("active")
        self._active_tab_id = tab_id
        self.manager.set_active_tab(tab_id)

        session = self.manager.sessions.get(tab_id)
        if session is not None:
            self.address.value = session.url or ""

    def close_tab(self, tab_id: str) -> None:
        tab = self._tab_element(tab_id)
        content = self._content_element(tab_id)
        if tab is not None:
            tab.remove()
        if content is not None:
            content.remove()

        self.manager.close_tab(tab_id)

        if tab_id != self._active_tab_id:
            return
        remaining = self.document.query_by_class("browser-tab")
        if remaining:
            self.set_active_tab(remaining[0].dataset["tab_id"])
        else:
            self._active_tab_id = None
            self.manager.set_active_tab(None)
            self.address.value = ""

    async def submit(self) -> None:
        """Handle the address bar form: navigate the active tab or open one."""
        if not self.address.value.strip():
            return

        template = self.search_engine.value if self.search_engine else ""
        url = search(self.address.value, template or DEFAULT_SEARCH_ENGINE)
        tab_id = self._active_tab_id
        try:
            if tab_id is None:
                self.create_browser_tab(url)
            else:
                frame = await self.manager.navigate_tab(tab_id, url)
                self._show_frame(tab_id, frame)
                self.update_tab_title(tab_id, url)
        except TabClosedError:
            return
        except DoxyEduError as e:
            logger.error("Navigation error", tab_id=tab_id, url=url, error=str(e))
            if self.error is not None:
                self.error.text = "Failed to navigate"
            if self.error_code is not None:
                self.error_code.text = str(e)
            if tab_id is not None:
                self._render_error(tab_id, e)
            return

        if self.error is not None:
            self.error.text = ""
        if self.error_code is not None:
            self.error_code.text = ""
