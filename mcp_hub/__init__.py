"""MCP Hub - connection hub for external Model Context Protocol servers."""

__version__ = "0.1.0"

from .core import FileWatcher, HubServer, MCPHub
from .config import ConfigLoader, HubConfig, HubSettings, ServerConfig
from .errors import (
    CallTimeoutError,
    ConfigError,
    CorruptDocumentError,
    HubError,
    ServerConnectionError,
    ToolPermissionError,
    TransportError,
    UnknownServerError,
    WriteError,
)
from .persistence import AtomicStore, StateStore
from .server import ConnectionManager, ConnectionState

__all__ = [
    "MCPHub",
    "HubServer",
    "FileWatcher",
    "ConfigLoader",
    "HubConfig",
    "HubSettings",
    "ServerConfig",
    "AtomicStore",
    "StateStore",
    "ConnectionManager",
    "ConnectionState",
    "HubError",
    "ConfigError",
    "ServerConnectionError",
    "TransportError",
    "CallTimeoutError",
    "ToolPermissionError",
    "UnknownServerError",
    "WriteError",
    "CorruptDocumentError",
]
