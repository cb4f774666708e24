"""The hub exposed to MCP clients as a single MCP server over stdio."""

import base64
import logging
import sys
from typing import Iterable, List

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server
from pydantic import AnyUrl

from ..errors import HubError
from ..routing.aggregator import (
    ResponseAggregator,
    split_resource_uri,
    split_tool_name,
)
from .hub import MCPHub

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class HubServer:
    """Serves the aggregated tools and resources of an MCPHub."""

    def __init__(self, hub: MCPHub, name: str = "mcp-hub"):
        self.hub = hub
        self.aggregator = ResponseAggregator(hub)
        self.mcp_server = Server(name)
        self._setup_mcp_handlers()

    def _setup_logging(self, level: str = "info"):
        """Setup logging configuration. stdout carries the MCP stream."""
        logging.basicConfig(
            level=getattr(logging, level.upper()), format=LOG_FORMAT, stream=sys.stderr
        )
        logging.getLogger().setLevel(getattr(logging, level.upper()))

    def _setup_mcp_handlers(self):
        """Set up MCP server handlers that route to the hub's servers."""

        @self.mcp_server.list_tools()
        async def list_tools() -> list[types.Tool]:
            try:
                return await self.aggregator.aggregate_tools()
            except Exception as e:
                logger.error(f"Exception in list_tools: {e}", exc_info=True)
                return []

        @self.mcp_server.call_tool()
        async def call_tool(name: str, arguments: dict) -> types.CallToolResult:
            return await self.call_tool(name, arguments)

        @self.mcp_server.list_resources()
        async def list_resources() -> list[types.Resource]:
            try:
                return await self.aggregator.aggregate_resources()
            except Exception as e:
                logger.error(f"Exception in list_resources: {e}", exc_info=True)
                return []

        @self.mcp_server.read_resource()
        async def read_resource(uri: AnyUrl) -> Iterable[ReadResourceContents]:
            return await self.read_resource(str(uri))

    async def call_tool(self, name: str, arguments: dict) -> types.CallToolResult:
        """Route a namespaced ``server.tool`` call.

        Hub failures become error results with a text message; results from
        the server are passed on as they are, ``isError`` included.
        """
        try:
            server, tool = split_tool_name(name)
            result = await self.hub.call_tool(server, tool, arguments)
        except (HubError, ValueError) as e:
            return _error_result(f"Error: {e}")
        except Exception as e:
            logger.error(f"Exception in call_tool: {e}", exc_info=True)
            return _error_result(f"Internal error: {e}")

        if result.isError:
            logger.info(f"Tool {name} reported an error")
        return result

    async def read_resource(self, uri: str) -> List[ReadResourceContents]:
        """Read ``mcp://server/<uri>`` from the owning server."""
        try:
            server, inner = split_resource_uri(uri)
            result = await self.hub.read_resource(server, inner)
        except (HubError, ValueError) as e:
            return [ReadResourceContents(content=f"Error: {e}", mime_type="text/plain")]
        except Exception as e:
            logger.error(f"Exception in read_resource: {e}", exc_info=True)
            return [
                ReadResourceContents(content=f"Internal error: {e}", mime_type="text/plain")
            ]

        contents = []
        for item in result.contents:
            if isinstance(item, types.BlobResourceContents):
                contents.append(
                    ReadResourceContents(
                        content=base64.b64decode(item.blob), mime_type=item.mimeType
                    )
                )
            else:
                contents.append(
                    ReadResourceContents(content=item.text, mime_type=item.mimeType)
                )
        return contents

    def _initialization_options(self) -> InitializationOptions:
        settings = self.hub.config.hub
        return InitializationOptions(
            server_name=settings.name,
            server_version=settings.version,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=True),
                resources=types.ResourcesCapability(listChanged=True),
            ),
            instructions=None,
        )

    async def run(self) -> None:
        """Start the hub and serve MCP over stdio until the client goes away."""
        self._setup_logging()
        async with self.hub:
            self._setup_logging(self.hub.config.hub.log_level)
            logger.info(f"MCP hub '{self.hub.config.hub.name}' serving on stdio")
            async with stdio_server() as (read_stream, write_stream):
                await self.mcp_server.run(
                    read_stream, write_stream, self._initialization_options()
                )


def _error_result(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)], isError=True
    )
