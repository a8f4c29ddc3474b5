"""Core."""

from .config import (
    DEFAULT_PORT,
    GatewayConfig,
    GatewaySettings,
    RestartPolicy,
    TunnelProcessConfig,
    WispOptions,
    build_gateway_config,
    load_config_from_file,
    parse_port,
)

__all__ = [
    "DEFAULT_PORT",
    "GatewayConfig",
    "GatewaySettings",
    "RestartPolicy",
    "TunnelProcessConfig",
    "WispOptions",
    "build_gateway_config",
    "load_config_from_file",
    "parse_port",
]
