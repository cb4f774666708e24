"""Selects the transport implementation for a server configuration."""

from typing import Callable, Dict, Type

from ..config.models import ServerConfig
from ..errors import ConfigError
from .base import Transport
from .http import StreamableHTTPTransport
from .sse import SSETransport
from .stdio import StdioTransport

TransportFactory = Callable[[ServerConfig], Transport]

TRANSPORTS: Dict[str, Type[Transport]] = {
    "stdio": StdioTransport,
    "sse": SSETransport,
    "streamableHttp": StreamableHTTPTransport,
}


def create_transport(server: ServerConfig) -> Transport:
    """Build the transport for ``server``. The only branch on transport type."""
    transport_cls = TRANSPORTS.get(server.transport)
    if transport_cls is None:
        raise ConfigError(
            f"server '{server.name}': field 'transport': "
            f"unsupported transport '{server.transport}'"
        )
    return transport_cls(server)
