"""Transports to external MCP servers."""

from .base import SessionTransport, Transport
from .factory import TransportFactory, create_transport
from .http import StreamableHTTPTransport
from .sse import SSETransport
from .stdio import StdioTransport

__all__ = [
    "Transport",
    "SessionTransport",
    "StdioTransport",
    "SSETransport",
    "StreamableHTTPTransport",
    "TransportFactory",
    "create_transport",
]
