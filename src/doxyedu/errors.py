"""Error taxonomy shared by the gateway and the tab manager.

Client-side failures abort a tab creation and propagate to the UI layer.
Server-side failures are isolated to a single connection, apart from
``GatewayBindError`` which is fatal at startup.
"""

from __future__ import annotations


class DoxyEduError(Exception):
    """Base class for all DoxyEdu errors."""


class TabError(DoxyEduError):
    """A tab operation could not complete."""

    def __init__(self, tab_id: str, message: str) -> None:
        super().__init__(message)
        self.tab_id = tab_id


class TransportInitError(DoxyEduError):
    """The transport multiplexer could not be configured.

    Shared by every tab waiting on the same configuration attempt, so it
    carries no tab identifier.
    """

    def __init__(self, cause: BaseException | None = None) -> None:
        super().__init__(f"Transport setup failed: {cause}")
        self.cause = cause


class ProxyEngineError(TabError):
    """The proxy engine failed to build or navigate a frame."""

    def __init__(self, tab_id: str, cause: BaseException | None = None) -> None:
        super().__init__(tab_id, f"Proxy frame failed: {cause}")
        self.cause = cause


class TabClosedError(TabError):
    """The tab was closed while its creation was still in flight."""

    def __init__(self, tab_id: str) -> None:
        super().__init__(tab_id, f"Tab {tab_id} was closed during creation")


class ServiceWorkerError(DoxyEduError):
    """Base class for service worker prerequisites."""


class UnsupportedEnvironmentError(ServiceWorkerError):
    """The host has no service worker capability."""


class RegistrationError(ServiceWorkerError):
    """Service worker registration was rejected."""

    def __init__(self, script: str, cause: BaseException) -> None:
        super().__init__(f"Service worker registration for {script} failed: {cause}")
        self.script = script
        self.cause = cause


class UpgradeDispatchError(DoxyEduError):
    """Routing a protocol upgrade to the tunnel backend failed."""

    def __init__(self, path: str, cause: BaseException | None = None) -> None:
        super().__init__(f"Upgrade dispatch failed for {path}: {cause}")
        self.path = path
        self.cause = cause


class GatewayBindError(DoxyEduError):
    """The listening socket could not be bound."""

    def __init__(self, host: str, port: int, cause: BaseException) -> None:
        super().__init__(f"Cannot listen on {host}:{port}: {cause}")
        self.host = host
        self.port = port
        self.cause = cause
