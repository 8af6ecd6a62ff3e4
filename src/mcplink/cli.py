"""mcplink CLI entrypoint."""

from __future__ import annotations

import click

from mcplink import __version__
from mcplink.cli_commands._config import enable_tracing
from mcplink.cli_commands._output import LOG_LEVELS, configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="mcplink")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    envvar="MCPLINK_CONFIG",
    default=None,
    help="YAML file listing the MCP servers (default: built-in servers only).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Verbosity of the diagnostics written to stderr.",
)
@click.option(
    "--otlp-endpoint",
    envvar="MCPLINK_OTLP_ENDPOINT",
    default=None,
    help="Export trace spans over OTLP/gRPC to this endpoint (needs mcplink[otel]).",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, log_level: str, otlp_endpoint: str | None) -> None:
    """mcplink — route MCP JSON-RPC calls over stdio, HTTP and host commands."""
    configure_logging(log_level)
    enable_tracing(otlp_endpoint)
    ctx.obj = {"config_path": config_path}


# Register subcommands
from mcplink.cli_commands import register_commands  # noqa: E402

register_commands(main)

if __name__ == "__main__":
    main()
