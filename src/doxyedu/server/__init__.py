"""Gateway server: static assets, tunnel upgrades and backend supervision."""

from doxyedu.server.gateway import ISOLATION_HEADERS, Gateway, GatewayState, is_upgrade_request
from doxyedu.server.static import Mount, StaticResolver
from doxyedu.server.supervisor import TunnelSupervisor
from doxyedu.server.wisp import TunnelBackend, WispRelay

__all__ = [
    "Gateway",
    "GatewayState",
    "ISOLATION_HEADERS",
    "is_upgrade_request",
    "Mount",
    "StaticResolver",
    "TunnelSupervisor",
    "TunnelBackend",
    "WispRelay",
]
