"""Local-process transport over the child's stdin/stdout."""

from contextlib import AbstractAsyncContextManager

from mcp import StdioServerParameters
from mcp.client.stdio import stdio_client

from .base import SessionTransport


class StdioTransport(SessionTransport):
    """Spawns the configured command and speaks MCP over its standard streams.

    Messages are newline-delimited JSON-RPC, the MCP stdio framing. Leaving
    the client context closes stdin and terminates the process.
    """

    def _open_streams(self) -> AbstractAsyncContextManager:
        params = StdioServerParameters(
            command=self.server.command,
            args=list(self.server.args),
            env=dict(self.server.env) or None,
            cwd=self.server.cwd,
        )
        return stdio_client(params)
