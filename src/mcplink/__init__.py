"""mcplink — JSON-RPC transport bridge for MCP clients and servers."""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from mcplink.bridge import ProtocolBridge as ProtocolBridge
    from mcplink.config import RouterConfig as RouterConfig
    from mcplink.config import load_config as load_config
    from mcplink.router import CorrelationRouter as CorrelationRouter
    from mcplink.router import HostCapabilities as HostCapabilities

_LAZY_EXPORTS = {
    "CorrelationRouter": "mcplink.router",
    "HostCapabilities": "mcplink.router",
    "ProtocolBridge": "mcplink.bridge",
    "RouterConfig": "mcplink.config",
    "load_config": "mcplink.config",
}


def __getattr__(name: str) -> object:
    module_path = _LAZY_EXPORTS.get(name)
    if module_path is not None:
        import importlib

        mod = importlib.import_module(module_path)
        return getattr(mod, name)
    raise AttributeError(f"module 'mcplink' has no attribute {name!r}")
