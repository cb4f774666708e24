"""Server-Sent-Events transport."""

from contextlib import AbstractAsyncContextManager

from mcp.client.sse import sse_client

from .base import SessionTransport


class SSETransport(SessionTransport):
    """Persistent event stream; requests are POSTed and matched by request id."""

    def _open_streams(self) -> AbstractAsyncContextManager:
        return sse_client(self.server.url, headers=dict(self.server.headers) or None)
