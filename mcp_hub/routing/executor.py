"""Executes tool calls and resource reads under a time budget."""

import asyncio
import logging
from typing import Any, Dict, Optional

import mcp.types as types

from ..access.permissions import is_tool_allowed
from ..config.models import ServerConfig
from ..errors import CallTimeoutError, ToolPermissionError, TransportError
from ..transport.base import Transport

logger = logging.getLogger(__name__)


class CallExecutor:
    """Wraps transport calls with permission checks, timeouts and error mapping.

    A timeout cancels the in-flight transport call exactly as a caller
    cancellation would; the connection itself stays up.
    """

    def authorize(self, server: ServerConfig, tool: str) -> None:
        """Raise ToolPermissionError if ``tool`` is disabled for ``server``."""
        if not is_tool_allowed(tool, server):
            logger.warning(f"Rejected call to disabled tool {server.name}.{tool}")
            raise ToolPermissionError(server.name, tool)

    async def call(
        self,
        server: ServerConfig,
        transport: Transport,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> types.CallToolResult:
        self.authorize(server, tool)
        return await self._run(
            server,
            f"call_tool '{tool}'",
            transport.call_tool(tool, arguments or {}),
            timeout,
        )

    async def read(
        self,
        server: ServerConfig,
        transport: Transport,
        uri: str,
        timeout: Optional[float] = None,
    ) -> types.ReadResourceResult:
        return await self._run(
            server, f"read_resource '{uri}'", transport.read_resource(uri), timeout
        )

    async def _run(
        self,
        server: ServerConfig,
        operation: str,
        request,
        timeout: Optional[float],
    ):
        budget = timeout if timeout is not None else server.timeout_seconds
        if budget <= 0:
            request.close()
            raise ValueError(f"timeout must be positive, got {budget}")

        try:
            return await asyncio.wait_for(request, timeout=budget)
        except asyncio.TimeoutError:
            logger.error(f"Timeout in {operation} on server {server.name}")
            raise CallTimeoutError(server.name, operation, budget)
        except TransportError as e:
            e.server = server.name
            logger.error(f"Error in {operation} on server {server.name}: {e.message}")
            raise
