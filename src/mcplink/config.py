"""Router and bridge configuration.

Configuration is a YAML file shaped like the usual MCP client config::

    mcpServers:
      filesystem:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "${HOME}"]
      weather:
        command: python
        args: ["weather_server.py"]
        status: paused
    remote_url: http://127.0.0.1:4200/my-custom-path
    session_mode: persistent

``${VAR}`` references are expanded from the environment before parsing.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from mcplink.builtin import TIME_SERVER_ID
from mcplink.errors import ConfigError
from mcplink.protocol.models import ServerConfig
from mcplink.transport.http import HTTP_TIMEOUT
from mcplink.transport.shell import SHELL_TIMEOUT, ShellFlavor
from mcplink.transport.stdio import STDIO_TIMEOUT

DEFAULT_BACKEND_URL = "http://127.0.0.1:4200/my-custom-path"
DEFAULT_REMOTE_PREFIX = "remote-"

SessionMode = Literal["persistent", "per_call"]

_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def env_flag(value: str | None, *, default: bool) -> bool:
    """Interpret an environment variable as a boolean; unset keeps *default*."""
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in _FALSE_VALUES


def builtin_servers() -> dict[str, ServerConfig]:
    """Stdio configs for the servers shipped with mcplink."""
    return {
        TIME_SERVER_ID: ServerConfig(command=sys.executable, args=["-m", "mcplink", "time-server"]),
    }


class RouterConfig(BaseModel):
    """Everything the correlation router needs to reach its clients."""

    model_config = {"populate_by_name": True}

    servers: dict[str, ServerConfig] = Field(default_factory=builtin_servers, alias="mcpServers")
    remote_url: str | None = Field(default=None, description="Backend serving the remote-<tool> clients.")
    remote_prefix: str = DEFAULT_REMOTE_PREFIX
    stdio_timeout: float = Field(default=STDIO_TIMEOUT, gt=0)
    http_timeout: float = Field(default=HTTP_TIMEOUT, gt=0)
    shell_timeout: float = Field(default=SHELL_TIMEOUT, gt=0)
    verify_tls: bool = True
    session_mode: SessionMode = "persistent"
    cache_ttl: float | None = Field(default=None, gt=0, description="Seconds; None caches until invalidated.")
    shell_flavor: ShellFlavor = "curl"
    builtin_fallback: bool = Field(default=True, description="Answer built-in clients in-process as a last resort.")

    def with_env(self, environ: Mapping[str, str] | None = None) -> RouterConfig:
        """Return a copy with ``MCPLINK_*`` environment overrides applied."""
        env = os.environ if environ is None else environ
        update: dict[str, Any] = {}
        if env.get("MCPLINK_REMOTE_URL"):
            update["remote_url"] = env["MCPLINK_REMOTE_URL"]
        if "MCPLINK_VERIFY_TLS" in env:
            update["verify_tls"] = env_flag(env["MCPLINK_VERIFY_TLS"], default=self.verify_tls)
        mode = env.get("MCPLINK_SESSION_MODE")
        if mode:
            if mode not in ("persistent", "per_call"):
                msg = f"MCPLINK_SESSION_MODE must be 'persistent' or 'per_call', got {mode!r}"
                raise ConfigError(msg)
            update["session_mode"] = mode
        return self.model_copy(update=update)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RouterConfig:
        """Default configuration with environment overrides."""
        return cls().with_env(environ)


class BridgeSettings(BaseModel):
    """Settings for the stdio-to-HTTP bridge process."""

    url: str = DEFAULT_BACKEND_URL
    timeout: float = Field(default=HTTP_TIMEOUT, gt=0)
    verify_tls: bool = True
    debug: bool = False
    otlp_endpoint: str | None = None

    @classmethod
    def from_env(cls, url: str | None = None, environ: Mapping[str, str] | None = None) -> BridgeSettings:
        """Resolve the backend URL (argument, then ``MCP_SERVER_URL``) and env flags."""
        env = os.environ if environ is None else environ
        return cls(
            url=url or env.get("MCP_SERVER_URL") or DEFAULT_BACKEND_URL,
            verify_tls=env_flag(env.get("MCPLINK_VERIFY_TLS"), default=True),
            debug=env_flag(env.get("DEBUG"), default=False),
            otlp_endpoint=env.get("MCPLINK_OTLP_ENDPOINT") or None,
        )


def load_config(path: str | Path) -> RouterConfig:
    """Read a YAML config file, interpolate env vars, and validate.

    Built-in servers are added unless the file configures the same id.

    Raises:
        ConfigError: On I/O errors, YAML parse errors or schema validation failures.
    """
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read {p}: {exc}") from exc

    expanded = os.path.expandvars(raw)

    try:
        data: Any = yaml.safe_load(expanded)
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML parse error: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")

    try:
        config = RouterConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    if "mcpServers" in data or "servers" in data:
        config.servers = {**builtin_servers(), **config.servers}
    return config
