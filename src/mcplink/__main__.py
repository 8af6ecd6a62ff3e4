"""Allow ``python -m mcplink``."""

from mcplink.cli import main

main()
