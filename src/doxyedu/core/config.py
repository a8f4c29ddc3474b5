"""Configuration types with environment variable support.

The listening port honours the conventional ``PORT`` variable; everything else
can be set through ``DOXYEDU_`` prefixed variables or a YAML/TOML file.
Example: PORT=3000 DOXYEDU_HOST=127.0.0.1 doxyedu serve
"""

from __future__ import annotations

import re
import sys
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 8080
PACKAGE_PUBLIC_DIR = Path(__file__).resolve().parent.parent / "public"

_LEADING_DIGITS = re.compile(r"^\s*(\d+)")


def parse_port(value: Any, default: int = DEFAULT_PORT) -> int:
    """Parse a port value the lenient way shells and PaaS hosts hand it over.

    Leading digits are honoured ("8081abc" -> 8081). Absent, non-numeric and
    out-of-range values fall back to ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        port = value
    else:
        match = _LEADING_DIGITS.match(str(value))
        if not match:
            return default
        port = int(match.group(1))
    if not 0 < port < 65536:
        return default
    return port


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


class RestartPolicy(str, Enum):
    """What the supervisor does when the tunnel process exits on its own."""

    NONE = "none"
    RESTART = "restart"
    FAIL_FAST = "fail-fast"


class TunnelProcessConfig(BaseModel):
    """How the tunnel backend child process is launched and supervised."""

    python: str = Field(
        default=sys.executable,
        description="Interpreter used to run the tunnel backend module.",
    )
    module: str = Field(
        default="wisp.server",
        description="Module implementing the tunnel backend.",
    )
    host: str = "127.0.0.1"
    port: int = 9090
    threads: int = Field(default=6, ge=1)
    restart_policy: RestartPolicy = Field(
        default=RestartPolicy.RESTART,
        description="Reaction to an unexpected child exit: none, restart or fail-fast.",
    )
    max_restarts: int = Field(
        default=5,
        ge=0,
        description="Restarts attempted before escalating to fail-fast.",
    )
    restart_backoff: float = Field(
        default=1.0,
        description="Initial delay before a restart (seconds), doubled per attempt.",
    )
    max_backoff: float = Field(
        default=30.0,
        description="Upper bound for the restart delay (seconds).",
    )
    kill_timeout: float = Field(
        default=5.0,
        description="Grace period between SIGTERM and SIGKILL on shutdown (seconds).",
    )

    def command(self) -> list[str]:
        """Argument vector for the child process."""
        return [
            self.python,
            "-m",
            self.module,
            "--host",
            self.host,
            "--port",
            str(self.port),
            "--threads",
            str(self.threads),
        ]


class WispOptions(BaseModel):
    """Options for the tunnel backend.

    The gateway does not interpret these beyond choosing the relay target;
    they belong to the backend implementation.
    """

    transport: str = Field(
        default="curl",
        description="Backend transport. Only the native 'curl' transport is supported.",
    )
    curl_host: str = Field(
        default="http://127.0.0.1:9090",
        description="Address of the supervised tunnel backend.",
    )
    encrypted: bool = True
    allow_udp_streams: bool = True
    hostname_blacklist: list[re.Pattern[str]] = Field(
        default_factory=lambda: [re.compile(r"example\.com")],
        description="Regular expressions of hostnames the backend refuses.",
    )
    dns_servers: list[str] = Field(default_factory=lambda: ["1.1.1.3", "1.0.0.3"])

    @field_validator("transport")
    @classmethod
    def _production_transport(cls, value: str) -> str:
        if value != "curl":
            raise ValueError(
                f"transport {value!r} is not supported; the in-process fallback "
                "is disabled, use 'curl'"
            )
        return value


class GatewayConfig(BaseModel):
    """Gateway configuration."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    public_dir: Path = Field(
        default=PACKAGE_PUBLIC_DIR,
        description="Browser UI and its assets, served at the site root.",
    )
    scramjet_dir: Path = Field(
        default=Path("vendor/scram"),
        description="Rewriting engine assets, served under /scram/.",
    )
    epoxy_dir: Path = Field(
        default=Path("vendor/epoxy"),
        description="Transport library assets, served under /epoxy/.",
    )
    baremux_dir: Path = Field(
        default=Path("vendor/baremux"),
        description="Transport multiplexer assets, served under /baremux/.",
    )
    tunnel_prefix: str = "/wisp/"
    not_found_page: str = "404.html"
    tunnel: TunnelProcessConfig = Field(default_factory=TunnelProcessConfig)
    wisp: WispOptions = Field(default_factory=WispOptions)

    @field_validator("port", mode="before")
    @classmethod
    def _lenient_port(cls, value: Any) -> int:
        return parse_port(value)

    @field_validator("tunnel_prefix")
    @classmethod
    def _slash_delimited(cls, value: str) -> str:
        if not value.startswith("/"):
            value = "/" + value
        if not value.endswith("/"):
            value += "/"
        return value

    def to_display_dict(self) -> dict[str, Any]:
        """Export the configuration as a nested dictionary for display."""
        return {
            "gateway": {
                "host": self.host,
                "port": self.port,
                "public_dir": str(self.public_dir),
                "scramjet_dir": str(self.scramjet_dir),
                "epoxy_dir": str(self.epoxy_dir),
                "baremux_dir": str(self.baremux_dir),
                "tunnel_prefix": self.tunnel_prefix,
                "not_found_page": self.not_found_page,
            },
            "tunnel": {
                "command": " ".join(self.tunnel.command()),
                "restart_policy": self.tunnel.restart_policy.value,
                "max_restarts": self.tunnel.max_restarts,
                "restart_backoff": self.tunnel.restart_backoff,
                "kill_timeout": self.tunnel.kill_timeout,
            },
            "wisp": {
                "transport": self.wisp.transport,
                "curl_host": self.wisp.curl_host,
                "encrypted": self.wisp.encrypted,
                "allow_udp_streams": self.wisp.allow_udp_streams,
                "hostname_blacklist": [p.pattern for p in self.wisp.hostname_blacklist],
                "dns_servers": self.wisp.dns_servers,
            },
        }


class GatewaySettings(BaseSettings):
    """Environment-provided gateway settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOXYEDU_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = Field(
        default=DEFAULT_PORT,
        validation_alias=AliasChoices("PORT", "DOXYEDU_PORT"),
        description="Listening port. Non-numeric values fall back to the default.",
    )
    public_dir: Path | None = None
    log_level: str = "info"

    @field_validator("port", mode="before")
    @classmethod
    def _lenient_port(cls, value: Any) -> int:
        return parse_port(value)


def build_gateway_config(
    file_config: dict[str, Any] | None = None,
    **overrides: Any,
) -> GatewayConfig:
    """Merge defaults, environment, an optional config file and CLI overrides.

    Later sources win: environment < file < explicit overrides. Overrides
    whose value is ``None`` are ignored so unset CLI options fall through.
    """
    settings = GatewaySettings()
    data: dict[str, Any] = {"host": settings.host, "port": settings.port}
    if settings.public_dir is not None:
        data["public_dir"] = settings.public_dir

    for key, value in (file_config or {}).items():
        data[key] = dict(value) if isinstance(value, dict) else value

    for key, value in overrides.items():
        if value is None:
            continue
        if key.startswith("tunnel_") and key not in GatewayConfig.model_fields:
            data.setdefault("tunnel", {})[key.removeprefix("tunnel_")] = value
        else:
            data[key] = value

    return GatewayConfig.model_validate(data)
