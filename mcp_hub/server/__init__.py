"""Server connection lifecycle."""

from .connection import (
    Connection,
    ConnectionState,
    ResourceListing,
    ServerStatus,
    ToolListing,
)
from .manager import ConnectionManager

__all__ = [
    "Connection",
    "ConnectionManager",
    "ConnectionState",
    "ResourceListing",
    "ServerStatus",
    "ToolListing",
]
