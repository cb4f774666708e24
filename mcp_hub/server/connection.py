"""Runtime state of one configured server."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import mcp.types as types

from ..access.permissions import ToolDescriptor
from ..config.models import ServerConfig
from ..transport.base import Transport


class ConnectionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RESTARTING = "restarting"


@dataclass
class ToolListing:
    """Visible tools of one server; ``stale`` when served from cache."""

    server: str
    tools: List[ToolDescriptor]
    stale: bool = False
    updated_at: Optional[datetime] = None


@dataclass
class ResourceListing:
    server: str
    resources: List[types.Resource]
    stale: bool = False
    updated_at: Optional[datetime] = None


@dataclass
class ServerStatus:
    name: str
    transport: str
    state: Optional[ConnectionState]
    disabled: bool = False
    tool_count: int = 0
    resource_count: int = 0
    request_count: int = 0
    error_count: int = 0
    retry_attempt: int = 0
    last_error: Optional[str] = None
    uptime_seconds: float = 0.0
    watch_paths: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "transport": self.transport,
            "state": self.state.value if self.state else "disabled",
            "disabled": self.disabled,
            "tool_count": self.tool_count,
            "resource_count": self.resource_count,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_attempt": self.retry_attempt,
            "last_error": self.last_error,
            "uptime_seconds": self.uptime_seconds,
            "watch_paths": list(self.watch_paths),
        }


class Connection:
    """Pairing of a ServerConfig with its active (or last active) transport.

    Owned by ConnectionManager; every mutation happens under the manager's
    per-name lock.
    """

    def __init__(self, server: ServerConfig):
        self.server = server
        self.state = ConnectionState.CONNECTING
        self.transport: Optional[Transport] = None
        self.tool_cache: Optional[List[types.Tool]] = None
        self.resource_cache: Optional[List[types.Resource]] = None
        self.cache_updated_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.connected_since: Optional[datetime] = None
        self.request_count = 0
        self.error_count = 0

        # Reconnect bookkeeping
        self.retry_attempt = 0
        self.retry_task: Optional[asyncio.Task] = None

        # Restart coalescing
        self.restart_queued = False
        self.pending_server: Optional[ServerConfig] = None

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def is_connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self.transport is not None
            and self.transport.connected
        )

    @property
    def uptime(self) -> Optional[timedelta]:
        if self.connected_since and self.state == ConnectionState.CONNECTED:
            return datetime.now() - self.connected_since
        return None

    def update_permissions(self, server: ServerConfig) -> None:
        """Apply a config change that does not touch the transport."""
        if server.connection_params() != self.server.connection_params():
            raise ValueError(
                f"Connection parameters of {self.name} changed; a restart is required"
            )
        self.server = server

    def mark_connected(
        self,
        transport: Transport,
        tools: List[types.Tool],
        resources: List[types.Resource],
    ) -> None:
        self.transport = transport
        self.state = ConnectionState.CONNECTED
        self.connected_since = datetime.now()
        self.last_error = None
        self.retry_attempt = 0
        self.update_caches(tools, resources)

    def mark_disconnected(self, error: Optional[str] = None) -> None:
        self.transport = None
        self.state = ConnectionState.DISCONNECTED
        self.connected_since = None
        if error is not None:
            self.last_error = error

    def update_caches(
        self,
        tools: Optional[List[types.Tool]] = None,
        resources: Optional[List[types.Resource]] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        if tools is not None:
            self.tool_cache = list(tools)
        if resources is not None:
            self.resource_cache = list(resources)
        self.cache_updated_at = updated_at or datetime.now()

    def status(self) -> ServerStatus:
        return ServerStatus(
            name=self.name,
            transport=self.server.transport,
            state=self.state,
            tool_count=len(self.tool_cache or []),
            resource_count=len(self.resource_cache or []),
            request_count=self.request_count,
            error_count=self.error_count,
            retry_attempt=self.retry_attempt,
            last_error=self.last_error,
            uptime_seconds=self.uptime.total_seconds() if self.uptime else 0.0,
            watch_paths=list(self.server.watch_paths),
        )
