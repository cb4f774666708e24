"""Core MCP hub application."""

from .file_watcher import FileWatcher, WatchEvent
from .hub import MCPHub
from .server import HubServer

__all__ = ["MCPHub", "HubServer", "FileWatcher", "WatchEvent"]
