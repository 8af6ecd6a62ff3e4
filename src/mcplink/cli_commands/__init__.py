"""CLI subcommand registration."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import click


def register_commands(cli: click.Group) -> None:
    """Register all subcommands on the CLI group."""
    from mcplink.cli_commands.bridge import bridge
    from mcplink.cli_commands.call import call
    from mcplink.cli_commands.serve import time_server
    from mcplink.cli_commands.status import status
    from mcplink.cli_commands.tools import tools

    cli.add_command(status)
    cli.add_command(tools)
    cli.add_command(call)
    cli.add_command(time_server)
    cli.add_command(bridge)
