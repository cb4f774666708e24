"""Tool permission policy."""

from .permissions import (
    ToolDescriptor,
    describe_tools,
    filter_tools,
    is_pre_approved,
    is_tool_allowed,
)

__all__ = [
    "ToolDescriptor",
    "describe_tools",
    "filter_tools",
    "is_pre_approved",
    "is_tool_allowed",
]
