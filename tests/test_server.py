"""
Tests for the hub's own MCP server surface and response aggregation.
"""
import mcp.types as types
import pytest

from mcp_hub import HubServer, MCPHub
from mcp_hub.routing.aggregator import (
    ResponseAggregator,
    split_resource_uri,
    split_tool_name,
)

CONFIG = """
hub:
  watchConfig: false
servers:
  fs:
    command: npx
    disabledTools: [write]
  git:
    command: git-mcp
"""


@pytest.fixture
def hub(tmp_path, write_yaml, fake_factory):
    project_path = write_yaml(tmp_path / "mcp-hub.yaml", CONFIG)
    return MCPHub(project_config=project_path, transport_factory=fake_factory)


class TestNames:
    """Test namespaced tool names and resource URIs."""

    def test_split_tool_name(self):
        assert split_tool_name("fs.read") == ("fs", "read")
        assert split_tool_name("fs.read.all") == ("fs", "read.all")

    @pytest.mark.parametrize("name", ["read", ".read", "fs."])
    def test_split_tool_name_rejects_bare_names(self, name):
        with pytest.raises(ValueError):
            split_tool_name(name)

    def test_split_resource_uri(self):
        assert split_resource_uri("mcp://fs/file:///notes") == ("fs", "file:///notes")
        with pytest.raises(ValueError):
            split_resource_uri("file:///notes")


class TestResponseAggregator:
    """Test fan-out across servers."""

    @pytest.mark.asyncio
    async def test_aggregate_tools(self, hub):
        """Test tools from every server are namespaced and filtered."""
        async with hub:
            tools = await ResponseAggregator(hub).aggregate_tools()

        assert [t.name for t in tools] == ["fs.read", "git.read", "git.write"]
        assert tools[0].description == "[fs] read tool"

    @pytest.mark.asyncio
    async def test_failing_server_is_skipped(self, hub, fake_factory):
        """Test a server with nothing to offer does not fail the aggregate."""
        fake_factory.backend("git").connect_failures = 100
        async with hub:
            tools = await ResponseAggregator(hub).aggregate_tools()

        assert [t.name for t in tools] == ["fs.read"]

    @pytest.mark.asyncio
    async def test_aggregate_resources(self, hub):
        """Test resources are addressed through mcp://server/ URIs."""
        async with hub:
            resources = await ResponseAggregator(hub).aggregate_resources()

        assert [str(r.uri) for r in resources] == [
            "mcp://fs/file:///notes",
            "mcp://git/file:///notes",
        ]
        assert resources[0].name == "fs.notes"


class TestHubServer:
    """Test routing of MCP requests to the hub."""

    @pytest.mark.asyncio
    async def test_call_tool_routes_namespaced_name(self, hub):
        """Test server.tool names reach the right server."""
        server = HubServer(hub)
        async with hub:
            result = await server.call_tool("git.write", {"path": "a"})

        assert result.content == [
            types.TextContent(type="text", text='write:{"path": "a"}')
        ]
        assert not result.isError

    @pytest.mark.asyncio
    async def test_errors_become_error_results(self, hub):
        """Test permission and naming errors are reported as error results."""
        server = HubServer(hub)
        async with hub:
            denied = await server.call_tool("fs.write", {})
            unnamed = await server.call_tool("write", {})
            unknown = await server.call_tool("nope.read", {})

        assert denied.isError and unnamed.isError and unknown.isError
        assert denied.content[0].text.startswith("Error: [fs] tool 'write' is disabled")
        assert unnamed.content[0].text.startswith("Error:")
        assert unknown.content[0].text.startswith("Error:")

    @pytest.mark.asyncio
    async def test_server_reported_error_keeps_flag(self, hub, fake_factory):
        """Test a tool result flagged as an error reaches the client flagged."""
        fake_factory.backend("git").failing_tools.add("write")
        server = HubServer(hub)
        async with hub:
            result = await server.call_tool("git.write", {"path": "a"})

        assert result.isError
        assert result.content[0].text == 'write:{"path": "a"}'

    @pytest.mark.asyncio
    async def test_read_resource(self, hub):
        """Test namespaced resource reads return the server's contents."""
        server = HubServer(hub)
        async with hub:
            contents = await server.read_resource("mcp://fs/file:///notes")

        assert [c.content for c in contents] == ["contents of file:///notes"]
