"""Tool visibility and pre-approval policy per server."""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import mcp.types as types

from ..config.models import ServerConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """A server tool as seen through the server's current permission policy."""

    name: str
    input_schema: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    visible: bool = True
    pre_approved: bool = False

    @classmethod
    def from_tool(cls, tool: types.Tool, server: ServerConfig) -> "ToolDescriptor":
        return cls(
            name=tool.name,
            input_schema=dict(tool.inputSchema or {}),
            description=tool.description,
            visible=is_tool_allowed(tool.name, server),
            pre_approved=is_pre_approved(tool.name, server),
        )


def _matches(tool_name: str, names: FrozenSet[str]) -> bool:
    """Exact name match, or a glob pattern such as ``write_*``."""
    if tool_name in names:
        return True
    return any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in names)


def is_tool_allowed(tool_name: str, server: ServerConfig) -> bool:
    return not _matches(tool_name, server.disabled_tools)


def is_pre_approved(tool_name: str, server: ServerConfig) -> bool:
    return is_tool_allowed(tool_name, server) and _matches(
        tool_name, server.always_allow
    )


def describe_tools(
    tools: Iterable[types.Tool], server: ServerConfig
) -> List[ToolDescriptor]:
    """Every tool with its visibility flag, for diagnostics."""
    return [ToolDescriptor.from_tool(tool, server) for tool in tools]


def filter_tools(
    tools: Iterable[types.Tool], server: ServerConfig
) -> List[ToolDescriptor]:
    """Tools the caller may discover; disabled tools are omitted entirely."""
    visible = []
    for descriptor in describe_tools(tools, server):
        if not descriptor.visible:
            logger.debug(f"Hiding disabled tool: {server.name}.{descriptor.name}")
            continue
        visible.append(descriptor)
    return visible
