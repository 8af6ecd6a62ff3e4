"""Shared fixtures for CLI tests."""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def _no_logging_setup() -> Iterator[None]:
    """CliRunner swaps stderr out; keep the root logger pointed at the real one."""
    with (
        patch("mcplink.cli.configure_logging"),
        patch("mcplink.cli_commands.bridge.configure_logging"),
    ):
        yield


@pytest.fixture
def no_subprocess(monkeypatch: pytest.MonkeyPatch) -> None:
    """Route built-in clients in-process instead of spawning them."""
    monkeypatch.setenv("MCPLINK_HOST_SUBPROCESS", "0")
    monkeypatch.setenv("MCPLINK_SHELL_BRIDGE", "0")
