"""Transport abstraction: one connection strategy to one external tool server."""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Awaitable, Dict, List, Optional, Set, TypeVar

import anyio
import httpx
import mcp.types as types
from mcp import ClientSession
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from ..config.models import ServerConfig
from ..errors import ServerConnectionError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# JSON-RPC error code the SDK reports to pending requests when the peer goes away
CONNECTION_CLOSED = -32000
DISCONNECT_TIMEOUT = 5.0

_STREAM_FAILURES = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    httpx.HTTPError,
    OSError,
)


class Transport(ABC):
    """Common capability set of every transport variant.

    Implementations must map their own failures onto ``TransportError``
    (mid-operation) or ``ServerConnectionError`` (handshake), and must let a
    cancelled call unwind without tearing down the connection.
    """

    def __init__(self, server: ServerConfig):
        self.server = server

    @property
    def name(self) -> str:
        return self.server.name

    @property
    @abstractmethod
    def connected(self) -> bool:
        """True while the transport can serve requests."""

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def list_tools(self) -> List[types.Tool]: ...

    @abstractmethod
    async def list_resources(self) -> List[types.Resource]: ...

    @abstractmethod
    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> types.CallToolResult: ...

    @abstractmethod
    async def read_resource(self, uri: str) -> types.ReadResourceResult: ...


class SessionTransport(Transport):
    """Transport backed by an MCP ``ClientSession``.

    The SDK's client contexts run inside a single runner task for the whole
    life of the connection (its receive loop); ``disconnect`` asks the runner
    to leave those contexts, which closes the stream or stops the process.
    Subclasses only provide the stream context.
    """

    def __init__(self, server: ServerConfig):
        super().__init__(server)
        self.session: Optional[ClientSession] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self._runner: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._closed: Optional[asyncio.Event] = None
        self._failed: Optional[asyncio.Event] = None
        self._broken = False
        self._notifications: Set[asyncio.Task] = set()

    @abstractmethod
    def _open_streams(self) -> AbstractAsyncContextManager:
        """SDK client context yielding ``(read_stream, write_stream, ...)``."""

    @property
    def connected(self) -> bool:
        return (
            self.session is not None
            and not self._broken
            and self._closed is not None
            and not self._closed.is_set()
        )

    async def connect(self) -> None:
        if self._runner is not None:
            raise ServerConnectionError(self.name, "transport already started")

        ready = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._closed = asyncio.Event()
        self._failed = asyncio.Event()
        self._broken = False
        self._runner = asyncio.create_task(
            self._run(ready), name=f"transport_{self.name}"
        )

        try:
            await ready
        except asyncio.CancelledError:
            await self.disconnect()
            raise
        except Exception as e:
            await self.disconnect()
            raise ServerConnectionError(
                self.name, f"handshake failed: {describe_error(e)}"
            ) from e

        logger.info(f"Connected to MCP server {self.name} ({self.server.transport})")

    async def _run(self, ready: asyncio.Future) -> None:
        try:
            async with self._open_streams() as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(
                    read_stream, write_stream, message_handler=self._on_message
                ) as session:
                    result = await session.initialize()
                    self.session = session
                    self.capabilities = result.capabilities
                    if not ready.done():
                        ready.set_result(None)
                    await self._stop.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning(
                    f"Transport for {self.name} closed with error: {describe_error(e)}"
                )
        finally:
            self.session = None
            self._closed.set()
            if not ready.done():
                ready.set_exception(ConnectionError("closed before handshake"))

    async def _on_message(self, message: Any) -> None:
        """Watch for stream failures the SDK reports through the message handler.

        A dropped SSE stream arrives here as an httpx or anyio error and ends
        the connection. Anything else (an unparsable message, the late answer
        to a request the caller cancelled) concerns one message only.
        """
        if not isinstance(message, Exception):
            return
        if isinstance(message, _STREAM_FAILURES):
            logger.warning(f"Transport error from {self.name}: {describe_error(message)}")
            self._broken = True
            self._failed.set()
        else:
            logger.debug(f"Ignoring message error from {self.name}: {describe_error(message)}")

    async def disconnect(self) -> None:
        runner = self._runner
        if runner is None:
            return
        self._runner = None
        self._stop.set()

        done, _ = await asyncio.wait({runner}, timeout=DISCONNECT_TIMEOUT)
        if not done:
            logger.warning(
                f"MCP server {self.name} did not shut down within "
                f"{DISCONNECT_TIMEOUT:g}s, cancelling"
            )
            runner.cancel()
            await asyncio.wait({runner}, timeout=DISCONNECT_TIMEOUT)

        for task in list(self._notifications):
            task.cancel()
        logger.info(f"Disconnected from MCP server {self.name}")

    async def list_tools(self) -> List[types.Tool]:
        session = self._require_session()
        if self.capabilities is not None and self.capabilities.tools is None:
            return []
        result = await self._guard("list_tools", session.list_tools())
        return list(result.tools)

    async def list_resources(self) -> List[types.Resource]:
        session = self._require_session()
        if self.capabilities is not None and self.capabilities.resources is None:
            return []
        result = await self._guard("list_resources", session.list_resources())
        return list(result.resources)

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> types.CallToolResult:
        session = self._require_session()
        return await self._guard(
            f"call_tool '{name}'",
            self._cancellable(session, session.call_tool(name, arguments or {})),
        )

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        session = self._require_session()
        return await self._guard(
            f"read_resource '{uri}'",
            self._cancellable(session, session.read_resource(AnyUrl(uri))),
        )

    def _require_session(self) -> ClientSession:
        if not self.connected:
            raise TransportError("not connected", self.name)
        return self.session

    async def _guard(self, operation: str, request: Awaitable[T]) -> T:
        """Run ``request`` until it finishes or the connection goes away."""
        call = asyncio.ensure_future(request)
        closed = asyncio.ensure_future(self._closed.wait())
        failed = asyncio.ensure_future(self._failed.wait())
        try:
            done, _ = await asyncio.wait(
                {call, closed, failed}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            closed.cancel()
            failed.cancel()
            if not call.done():
                call.cancel()

        if call not in done:
            reason = "connection closed" if closed in done else "stream failed"
            raise TransportError(f"{operation}: {reason}", self.name)

        try:
            return call.result()
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                self._broken = True
            raise TransportError(
                f"{operation} failed: {e.error.message}", self.name, e.error.code
            ) from e
        except _STREAM_FAILURES as e:
            self._broken = True
            raise TransportError(
                f"{operation} failed: {describe_error(e)}", self.name
            ) from e

    async def _cancellable(self, session: ClientSession, request: Awaitable[T]) -> T:
        # ClientSession numbers requests from this counter and nothing else runs
        # in this task before the request takes the next id.
        request_id = getattr(session, "_request_id", None)
        try:
            return await request
        except asyncio.CancelledError:
            if request_id is not None:
                self._notify_cancelled(session, request_id)
            raise

    def _notify_cancelled(self, session: ClientSession, request_id: int) -> None:
        notification = types.ClientNotification(
            types.CancelledNotification(
                method="notifications/cancelled",
                params=types.CancelledNotificationParams(
                    requestId=request_id, reason="cancelled by caller"
                ),
            )
        )
        task = asyncio.ensure_future(session.send_notification(notification))
        self._notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._notifications.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                f"Could not notify {self.name} of a cancelled request: "
                f"{task.exception()}"
            )


def describe_error(error: BaseException) -> str:
    """Readable message for plain exceptions and anyio exception groups."""
    if isinstance(error, BaseExceptionGroup):
        return "; ".join(describe_error(e) for e in error.exceptions)
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__
