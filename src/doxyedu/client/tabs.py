"""Tab session management.

Each tab owns one proxy frame and borrows the shared transport connection.
Operations on one tab identifier are serialized with a per-identifier lock;
different tabs interleave freely. Closing a tab fails every operation on it
that is running or queued at that moment, so a closed tab is never
registered again by work started before the close.

Usage:
    manager = TabSessionManager(engine, transport_holder, registrar)

    element = await manager.create_tab("tab-1", "https://example.org")
    await manager.navigate_tab("tab-1", "https://example.org/about")
    manager.close_tab("tab-1")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog

from doxyedu.client.dom import Element
from doxyedu.client.engine import ENGINE_FILES, ProxyEngine, ProxyFrame, TransportConnection
from doxyedu.client.serviceworker import ServiceWorkerRegistrar
from doxyedu.client.transport import TransportConnectionHolder
from doxyedu.errors import DoxyEduError, ProxyEngineError, TabClosedError

logger = structlog.get_logger()


def frame_dom_id(tab_id: str) -> str:
    return f"sj-frame-{tab_id}"


@dataclass
class TabSession:
    """A live tab: its frame, the borrowed connection and the current URL."""

    tab_id: str
    frame: ProxyFrame
    connection: TransportConnection
    url: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def element(self) -> Element:
        return self.frame.element


@dataclass
class _TabSlot:
    """Lock and close count for one identifier, kept while it is in use."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closes: int = 0
    users: int = 0


class TabSessionManager:
    """Creates, navigates and tears down tab sessions."""

    def __init__(
        self,
        engine: ProxyEngine,
        transport: TransportConnectionHolder,
        registrar: ServiceWorkerRegistrar,
        engine_files: Mapping[str, str] = ENGINE_FILES,
    ) -> None:
        self.engine = engine
        self.transport = transport
        self.registrar = registrar
        self.engine_files = dict(engine_files)
        self._sessions: dict[str, TabSession] = {}
        self._slots: dict[str, _TabSlot] = {}
        self._active_tab_id: str | None = None
        self._initialized = False

    @property
    def sessions(self) -> Mapping[str, TabSession]:
        """Read-only view of live sessions, in creation order."""
        return MappingProxyType(self._sessions)

    @property
    def active_tab_id(self) -> str | None:
        return self._active_tab_id

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Idempotent; runs on first use when not called explicitly."""
        if self._initialized:
            return
        self._initialized = True
        logger.info("Tab manager ready", transport=self.transport.module, wisp=self.transport.endpoint)

    async def create_tab(self, tab_id: str, url: str) -> Element:
        """Create a session for ``tab_id`` and navigate it to ``url``.

        An existing session for the identifier is navigated instead; a second
        frame is never allocated.

        Raises:
            UnsupportedEnvironmentError, RegistrationError: Service worker
                prerequisite missing or rejected.
            TransportInitError: The transport could not be configured.
            ProxyEngineError: The frame could not be built or navigated.
            TabClosedError: The tab was closed after this call was made and
                before it finished.
        """
        return await self._serialized(tab_id, url)

    async def navigate_tab(self, tab_id: str, url: str) -> Element:
        """Navigate an existing tab, reusing its frame; unknown tabs are created."""
        return await self._serialized(tab_id, url)

    def close_tab(self, tab_id: str) -> bool:
        """Remove the session and its frame. Returns False if there was none.

        Operations on the tab that are running or queued when this is called
        fail with ``TabClosedError`` instead of bringing the tab back.
        """
        slot = self._slots.get(tab_id)
        if slot is not None:
            slot.closes += 1
            if slot.users == 0:
                del self._slots[tab_id]

        session = self._sessions.pop(tab_id, None)
        if session is None:
            return False
        session.element.remove()
        logger.info("Closed tab", tab_id=tab_id)
        return True

    def set_active_tab(self, tab_id: str | None) -> None:
        self._active_tab_id = tab_id

    def get_active_frame(self) -> Element | None:
        """Frame element of the active tab; None if there is none or it is gone."""
        if self._active_tab_id is None:
            return None
        session = self._sessions.get(self._active_tab_id)
        return session.element if session else None

    async def _serialized(self, tab_id: str, url: str) -> Element:
        slot = self._slots.get(tab_id)
        if slot is None:
            slot = self._slots[tab_id] = _TabSlot()
        epoch = slot.closes
        slot.users += 1
        try:
            async with slot.lock:
                if slot.closes != epoch:
                    raise TabClosedError(tab_id)
                session = self._sessions.get(tab_id)
                if session is None:
                    return await self._create(tab_id, url, slot, epoch)
                logger.info("Navigating tab", tab_id=tab_id, url=url)
                self._go(session, url)
                return session.element
        finally:
            slot.users -= 1
            if slot.users == 0 and tab_id not in self._sessions and self._slots.get(tab_id) is slot:
                del self._slots[tab_id]

    async def _create(self, tab_id: str, url: str, slot: _TabSlot, epoch: int) -> Element:
        self.initialize()
        logger.info("Creating tab", tab_id=tab_id, url=url)

        try:
            await self.registrar.register()
            await self.transport.ensure_configured()
            frame = await self._build_frame(tab_id)
        except DoxyEduError as e:
            if slot.closes != epoch:
                raise TabClosedError(tab_id) from e
            logger.error("Failed to create tab", tab_id=tab_id, error=str(e))
            raise

        if slot.closes != epoch:
            logger.info("Tab closed during creation, discarding frame", tab_id=tab_id)
            frame.element.remove()
            raise TabClosedError(tab_id)

        session = TabSession(
            tab_id=tab_id,
            frame=frame,
            connection=self.transport.connection,
        )
        try:
            self._go(session, url)
        except DoxyEduError as e:
            logger.error("Failed to create tab", tab_id=tab_id, error=str(e))
            raise

        self._sessions[tab_id] = session
        return session.element

    async def _build_frame(self, tab_id: str) -> ProxyFrame:
        try:
            controller = self.engine.create_controller(dict(self.engine_files))
            await controller.init()
            frame = controller.create_frame()
        except Exception as e:
            raise ProxyEngineError(tab_id, e) from e
        frame.element.id = frame_dom_id(tab_id)
        return frame

    def _go(self, session: TabSession, url: str) -> None:
        try:
            session.frame.go(url)
        except Exception as e:
            raise ProxyEngineError(session.tab_id, e) from e
        session.url = url
