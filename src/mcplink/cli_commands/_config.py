"""Config resolution shared by the router-backed subcommands."""

from __future__ import annotations

import click

from mcplink.config import RouterConfig, load_config
from mcplink.errors import ConfigError
from mcplink.utils.telemetry import configure_telemetry


def router_config(ctx: click.Context) -> RouterConfig:
    """Load ``--config`` (or the defaults) with environment overrides applied."""
    path = (ctx.obj or {}).get("config_path")
    try:
        config = load_config(path) if path else RouterConfig()
        return config.with_env()
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def enable_tracing(otlp_endpoint: str | None) -> None:
    """Start exporting spans when an OTLP endpoint is given; no-op otherwise."""
    if not otlp_endpoint:
        return
    try:
        configure_telemetry(otlp_endpoint)
    except ImportError as exc:
        raise click.ClickException(str(exc)) from exc
