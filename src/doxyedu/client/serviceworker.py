"""Service worker registration, a prerequisite for proxied URL interception."""

from __future__ import annotations

import structlog

from doxyedu.client.engine import (
    SERVICE_WORKER_SCRIPT,
    ServiceWorkerContainer,
    ServiceWorkerRegistration,
)
from doxyedu.errors import RegistrationError, UnsupportedEnvironmentError

logger = structlog.get_logger()


def registration_phase(registration: ServiceWorkerRegistration) -> str:
    if registration.installing:
        return "installing"
    if registration.waiting:
        return "waiting"
    if registration.active:
        return "active"
    return "unknown"


class ServiceWorkerRegistrar:
    """Registers the proxy service worker at root scope."""

    def __init__(
        self,
        container: ServiceWorkerContainer | None,
        script: str = SERVICE_WORKER_SCRIPT,
        scope: str = "/",
    ) -> None:
        self.container = container
        self.script = script
        self.scope = scope

    async def register(self) -> ServiceWorkerRegistration:
        """Register the worker, bypassing the HTTP cache for update checks.

        Raises:
            UnsupportedEnvironmentError: The host has no service worker support.
            RegistrationError: The browser rejected the registration.
        """
        if self.container is None:
            raise UnsupportedEnvironmentError("Service workers not supported")

        try:
            registration = await self.container.register(
                self.script, scope=self.scope, update_via_cache="none"
            )
        except Exception as e:
            logger.error("Service worker registration failed", script=self.script, error=str(e))
            raise RegistrationError(self.script, e) from e

        logger.info("Service worker registered", script=self.script, phase=registration_phase(registration))
        return registration
