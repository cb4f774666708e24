"""
Shared pytest fixtures for all tests.
"""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import mcp.types as types
import pytest

from mcp_hub.config.models import ServerConfig
from mcp_hub.errors import ServerConnectionError, TransportError
from mcp_hub.transport.base import Transport


def make_server(name: str, **fields) -> ServerConfig:
    """A stdio server config with a placeholder command."""
    fields.setdefault("command", "fake-server")
    return ServerConfig(name=name, **fields)


class FakeBackend:
    """Scriptable behaviour shared by every transport created for one server."""

    def __init__(self, name: str, tools=("read", "write"), resources=("notes",)):
        self.name = name
        self.tools = [
            types.Tool(
                name=tool,
                description=f"{tool} tool",
                inputSchema={"type": "object"},
            )
            for tool in tools
        ]
        self.resources = [
            types.Resource(uri=f"file:///{resource}", name=resource)
            for resource in resources
        ]
        self.connect_failures = 0
        self.connect_delay = 0.0
        self.call_delay = 0.0
        self.crash_on_call = False
        self.failing_tools: Set[str] = set()
        self.connect_times: List[float] = []
        self.calls: List[tuple] = []
        self.cancelled_calls = 0
        self.transports: List["FakeTransport"] = []

    @property
    def connect_attempts(self) -> int:
        return len(self.connect_times)

    @property
    def current(self) -> Optional["FakeTransport"]:
        return self.transports[-1] if self.transports else None


class FakeTransport(Transport):
    """In-memory transport driven by a FakeBackend."""

    def __init__(self, server: ServerConfig, backend: FakeBackend):
        super().__init__(server)
        self.backend = backend
        self._connected = False
        self.disconnect_count = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        backend = self.backend
        backend.connect_times.append(asyncio.get_running_loop().time())
        if backend.connect_delay:
            await asyncio.sleep(backend.connect_delay)
        if backend.connect_failures > 0:
            backend.connect_failures -= 1
            raise ServerConnectionError(self.name, "handshake failed: refused")
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False
        self.disconnect_count += 1

    def crash(self) -> None:
        self._connected = False

    def _check(self) -> None:
        if not self._connected:
            raise TransportError("not connected", self.name)

    async def list_tools(self) -> List[types.Tool]:
        self._check()
        return list(self.backend.tools)

    async def list_resources(self) -> List[types.Resource]:
        self._check()
        return list(self.backend.resources)

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> types.CallToolResult:
        self._check()
        self.backend.calls.append((name, arguments))
        try:
            if self.backend.call_delay:
                await asyncio.sleep(self.backend.call_delay)
        except asyncio.CancelledError:
            self.backend.cancelled_calls += 1
            raise
        if self.backend.crash_on_call:
            self._connected = False
            raise TransportError(f"call_tool '{name}': connection closed", self.name)
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text", text=f"{name}:{json.dumps(arguments, sort_keys=True)}"
                )
            ],
            isError=name in self.backend.failing_tools,
        )

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        self._check()
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, text=f"contents of {uri}")]
        )


class FakeFactory:
    """Transport factory handing out FakeTransports, one backend per server."""

    def __init__(self):
        self.backends: Dict[str, FakeBackend] = {}

    def backend(self, name: str, **kwargs) -> FakeBackend:
        if name not in self.backends:
            self.backends[name] = FakeBackend(name, **kwargs)
        return self.backends[name]

    def __call__(self, server: ServerConfig) -> FakeTransport:
        backend = self.backend(server.name)
        transport = FakeTransport(server, backend)
        backend.transports.append(transport)
        return transport


@pytest.fixture
def fake_factory() -> FakeFactory:
    """Transport factory backed by in-memory fake servers."""
    return FakeFactory()


@pytest.fixture
def write_yaml():
    """Write a YAML document (given as text) to a path and return the path."""

    def _write(path: Path, text: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path

    return _write


@pytest.fixture
def echo_server_path() -> Path:
    """Path of the FastMCP stdio server used by transport tests."""
    return Path(__file__).parent / "fixtures" / "echo_server.py"
