"""Streamable HTTP transport."""

from contextlib import AbstractAsyncContextManager

from mcp.client.streamable_http import streamablehttp_client

from .base import SessionTransport


class StreamableHTTPTransport(SessionTransport):
    """Chunked HTTP requests/responses within one logical MCP session."""

    def _open_streams(self) -> AbstractAsyncContextManager:
        # Yields (read_stream, write_stream, get_session_id)
        return streamablehttp_client(
            self.server.url, headers=dict(self.server.headers) or None
        )
