"""Response aggregation across every server of a hub."""

import asyncio
import logging
from typing import TYPE_CHECKING, List, Tuple

import mcp.types as types

if TYPE_CHECKING:
    from ..core.hub import MCPHub

logger = logging.getLogger(__name__)

RESOURCE_SCHEME = "mcp://"


def namespaced_tool_name(server: str, tool: str) -> str:
    return f"{server}.{tool}"


def split_tool_name(name: str) -> Tuple[str, str]:
    """``server.tool`` -> ``(server, tool)``; tool names may contain dots."""
    server, sep, tool = name.partition(".")
    if not sep or not server or not tool:
        raise ValueError(f"Tool name '{name}' is not of the form 'server.tool'")
    return server, tool


def namespaced_resource_uri(server: str, uri: str) -> str:
    return f"{RESOURCE_SCHEME}{server}/{uri}"


def split_resource_uri(uri: str) -> Tuple[str, str]:
    """``mcp://server/<uri>`` -> ``(server, <uri>)``."""
    if not uri.startswith(RESOURCE_SCHEME):
        raise ValueError(f"Resource URI '{uri}' does not start with {RESOURCE_SCHEME}")
    server, sep, inner = uri[len(RESOURCE_SCHEME):].partition("/")
    if not sep or not server or not inner:
        raise ValueError(f"Resource URI '{uri}' is not of the form mcp://server/uri")
    return server, inner


class ResponseAggregator:
    """Aggregates listings from all servers of a hub."""

    def __init__(self, hub: "MCPHub"):
        self.hub = hub

    async def aggregate_tools(self) -> List[types.Tool]:
        """Visible tools of every server, namespaced with the server name."""
        all_tools = []
        names = self.hub.server_names
        if not names:
            logger.warning("No servers configured for tool aggregation")
            return all_tools

        results = await asyncio.gather(
            *(self.hub.list_tools(name) for name in names), return_exceptions=True
        )

        for name, result in zip(names, results):
            if isinstance(result, Exception):
                # Log error but continue with other servers
                logger.warning(f"Failed to get tools from {name}: {result}")
                continue
            if result.stale:
                logger.info(f"Serving cached tools for disconnected server {name}")

            for tool in result.tools:
                all_tools.append(
                    types.Tool(
                        name=namespaced_tool_name(name, tool.name),
                        description=f"[{name}] {tool.description or ''}".rstrip(),
                        inputSchema=tool.input_schema or {"type": "object"},
                    )
                )

        logger.info(f"Aggregated {len(all_tools)} tools from {len(names)} servers")
        return all_tools

    async def aggregate_resources(self) -> List[types.Resource]:
        """Resources of every server, addressed as ``mcp://server/<uri>``."""
        all_resources = []
        names = self.hub.server_names
        if not names:
            logger.warning("No servers configured for resource aggregation")
            return all_resources

        results = await asyncio.gather(
            *(self.hub.list_resources(name) for name in names), return_exceptions=True
        )

        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to get resources from {name}: {result}")
                continue

            for resource in result.resources:
                all_resources.append(
                    types.Resource(
                        uri=namespaced_resource_uri(name, str(resource.uri)),
                        name=f"{name}.{resource.name}",
                        description=f"[{name}] {resource.description}"
                        if resource.description
                        else None,
                        mimeType=resource.mimeType,
                    )
                )

        logger.info(
            f"Aggregated {len(all_resources)} resources from {len(names)} servers"
        )
        return all_resources
