"""Connection manager: the single owner of every server connection."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

import mcp.types as types
from pydantic import ValidationError

from ..access.permissions import filter_tools
from ..config.models import ServerConfig
from ..core.file_watcher import FileWatcher
from ..errors import (
    CallTimeoutError,
    ServerConnectionError,
    TransportError,
    UnknownServerError,
    WriteError,
)
from ..persistence.state import StateStore
from ..routing.executor import CallExecutor
from ..transport.base import Transport, describe_error
from ..transport.factory import TransportFactory, create_transport
from .connection import (
    Connection,
    ConnectionState,
    ResourceListing,
    ServerStatus,
    ToolListing,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS = (2.0, 4.0, 8.0, 16.0)


class ConnectionManager:
    """Owns ``name -> Connection`` and serializes lifecycle work per name.

    Operations on one name are ordered by that name's lock: calls queue behind
    an in-progress connect or restart. Different names never contend.
    """

    def __init__(
        self,
        transport_factory: TransportFactory = create_transport,
        state_store: Optional[StateStore] = None,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        debounce_seconds: float = 0.3,
        poll_interval: float = 0.1,
        base_dir: Optional[Union[str, Path]] = None,
        executor: Optional[CallExecutor] = None,
    ):
        self.transport_factory = transport_factory
        self.state_store = state_store
        self.retry_delays = tuple(retry_delays)
        self.executor = executor or CallExecutor()
        self.watcher = FileWatcher(
            self._on_watched_change,
            debounce_seconds=debounce_seconds,
            poll_interval=poll_interval,
            base_dir=base_dir,
        )
        self.last_write_error: Optional[str] = None

        self._connections: Dict[str, Connection] = {}
        self._disabled: Dict[str, ServerConfig] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._persisted: Dict[str, Dict[str, Any]] = {}
        self._background: Set[asyncio.Task] = set()

    # Lifecycle

    async def reconcile(self, configs: Dict[str, ServerConfig]) -> None:
        """Bring connections in line with ``configs``.

        New names are connected, removed or disabled names are torn down,
        names whose connection parameters changed are restarted, and names
        where only policy fields changed get a permission update.
        """
        enabled = {name: s for name, s in configs.items() if not s.disabled}
        self._disabled = {name: s for name, s in configs.items() if s.disabled}

        operations = []
        for name in list(self._connections):
            if name not in enabled:
                logger.info(f"Removing server: {name}")
                operations.append((name, self._remove(name)))

        for name, server in enabled.items():
            connection = self._connections.get(name)
            if connection is None:
                logger.info(f"Adding server: {name}")
                operations.append((name, self._add(server)))
            elif server.connection_params() != connection.server.connection_params():
                logger.info(f"Restarting modified server: {name}")
                operations.append((name, self.restart(name, server)))
            elif server != connection.server:
                logger.info(f"Updating permissions for server: {name}")
                operations.append((name, self.update_permissions(name, server)))

        if not operations:
            return

        results = await asyncio.gather(
            *(operation for _, operation in operations), return_exceptions=True
        )
        for (name, _), result in zip(operations, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to reconcile server {name}: {result}")

    async def connect(self, name: str) -> None:
        """Connect ``name`` now, resetting its retry schedule.

        Raises:
            ServerConnectionError: If the handshake fails. A retry is scheduled.
        """
        connection = self._require(name)
        async with self._lock_for(name):
            if connection.is_connected:
                return
            self._cancel_retry(connection)
            connection.retry_attempt = 0
            await self._teardown_transport(connection)
            connected = await self._connect_locked(connection)
        if not connected:
            raise ServerConnectionError(name, connection.last_error or "connect failed")

    async def restart(self, name: str, server: Optional[ServerConfig] = None) -> None:
        """Disconnect and reconnect ``name``, optionally with a new config.

        While a restart runs, one more restart may queue behind it; further
        triggers collapse into that queued restart.
        """
        connection = self._connections.get(name)
        if connection is None:
            logger.debug(f"Ignoring restart of unknown server {name}")
            return
        if server is not None:
            connection.pending_server = server

        # A restart waiting for the lock picks up the newest config when it runs
        if connection.restart_queued:
            logger.info(f"Restart of {name} already queued")
            return

        lock = self._lock_for(name)
        connection.restart_queued = True
        try:
            await lock.acquire()
        finally:
            connection.restart_queued = False

        try:
            if self._connections.get(name) is not connection:
                return
            await self._restart_locked(connection)
        finally:
            lock.release()

    async def update_permissions(self, name: str, server: ServerConfig) -> None:
        """Apply policy-only changes without touching the transport."""
        connection = self._require(name)
        async with self._lock_for(name):
            previous = connection.server
            connection.update_permissions(server)
            if server.watch_paths != previous.watch_paths:
                self.watcher.watch(name, server.watch_paths)

    async def disconnect(self, name: str) -> None:
        """Tear down the connection for ``name`` and forget it."""
        self._require(name)
        await self._remove(name)

    async def stop(self) -> None:
        """Tear down every connection, watch and background task."""
        logger.info("Stopping all MCP server connections")
        await self.watcher.close()
        # Pending cache writes must see the connections before they go away
        await self._drain_background()
        names = list(self._connections)
        if names:
            await asyncio.gather(
                *(self._remove(name, persist=False) for name in names),
                return_exceptions=True,
            )
        await self._drain_background()

    async def _add(self, server: ServerConfig) -> None:
        name = server.name
        async with self._lock_for(name):
            if name in self._connections:
                return
            connection = Connection(server)
            self._seed_from_persisted(connection)
            self._connections[name] = connection
            self.watcher.watch(name, server.watch_paths)
            await self._connect_locked(connection)

    async def _remove(self, name: str, persist: bool = True) -> None:
        async with self._lock_for(name):
            connection = self._connections.pop(name, None)
            if connection is None:
                return
            self.watcher.unwatch(name)
            self._cancel_retry(connection)
            await self._teardown_transport(connection)
            connection.mark_disconnected()
        if persist:
            self._spawn(self._persist_cache())

    async def _restart_locked(self, connection: Connection) -> None:
        logger.info(f"Restarting server: {connection.name}")
        self._cancel_retry(connection)
        connection.retry_attempt = 0
        connection.state = ConnectionState.RESTARTING

        if connection.pending_server is not None:
            server = connection.pending_server
            connection.pending_server = None
            if server.watch_paths != connection.server.watch_paths:
                self.watcher.watch(connection.name, server.watch_paths)
            connection.server = server

        await self._teardown_transport(connection)
        await self._connect_locked(connection)

    async def _connect_locked(self, connection: Connection) -> bool:
        """Handshake and list metadata; on failure schedule a retry."""
        connection.state = ConnectionState.CONNECTING
        try:
            transport = self.transport_factory(connection.server)
        except Exception as e:
            # Not retried: the same configuration would fail the same way
            connection.mark_disconnected(describe_error(e))
            logger.error(f"Cannot create transport for {connection.name}: {e}")
            return False

        try:
            tools, resources = await asyncio.wait_for(
                self._handshake(transport), timeout=connection.server.timeout_seconds
            )
        except asyncio.CancelledError:
            await transport.disconnect()
            connection.mark_disconnected("connect cancelled")
            raise
        except Exception as e:
            await transport.disconnect()
            if isinstance(e, asyncio.TimeoutError):
                reason = f"handshake timed out after {connection.server.timeout_seconds}s"
            else:
                reason = describe_error(e)
            connection.mark_disconnected(reason)
            logger.error(f"Failed to connect to MCP server {connection.name}: {reason}")
            self._schedule_retry(connection)
            return False

        connection.mark_connected(transport, tools, resources)
        logger.info(
            f"Server {connection.name} connected with {len(tools)} tools "
            f"and {len(resources)} resources"
        )
        self._spawn(self._persist_cache())
        return True

    @staticmethod
    async def _handshake(
        transport: Transport,
    ) -> Tuple[List[types.Tool], List[types.Resource]]:
        await transport.connect()
        tools = await transport.list_tools()
        resources = await transport.list_resources()
        return tools, resources

    async def _teardown_transport(self, connection: Connection) -> None:
        transport = connection.transport
        connection.transport = None
        if transport is None:
            return
        try:
            await transport.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from {connection.name}: {e}")

    def _mark_lost(self, connection: Connection, transport: Transport) -> None:
        """Mark a connection whose transport died as disconnected.

        No-op when a restart already replaced or tore down ``transport``.
        """
        if connection.transport is not transport:
            return
        logger.warning(f"Lost connection to MCP server {connection.name}")
        connection.mark_disconnected("connection lost")
        self._spawn(self._close_transport(connection.name, transport))

    async def _close_transport(self, name: str, transport: Transport) -> None:
        try:
            await transport.disconnect()
        except Exception as e:
            logger.debug(f"Error cleaning up transport for {name}: {e}")

    async def _on_watched_change(self, name: str) -> None:
        await self.restart(name)

    # Reconnect schedule

    def _schedule_retry(self, connection: Connection) -> None:
        if connection.retry_task is not None and not connection.retry_task.done():
            return
        if connection.retry_attempt >= len(self.retry_delays):
            logger.warning(
                f"Giving up on {connection.name} after {len(self.retry_delays)} "
                f"retries until the next explicit trigger"
            )
            return

        delay = self.retry_delays[connection.retry_attempt]
        connection.retry_attempt += 1
        logger.info(
            f"Retrying connection to {connection.name} in {delay:g}s "
            f"(attempt {connection.retry_attempt}/{len(self.retry_delays)})"
        )
        connection.retry_task = asyncio.create_task(
            self._retry_after(connection, delay), name=f"retry_{connection.name}"
        )

    async def _retry_after(self, connection: Connection, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock_for(connection.name):
            connection.retry_task = None
            if self._connections.get(connection.name) is not connection:
                return
            if connection.state != ConnectionState.DISCONNECTED:
                return
            await self._connect_locked(connection)

    def _cancel_retry(self, connection: Connection) -> None:
        task = connection.retry_task
        connection.retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _trigger_reconnect(self, connection: Connection) -> None:
        """A use of a server that is not connected starts the retry schedule."""
        transport = connection.transport
        if connection.state == ConnectionState.CONNECTED and transport is not None:
            if transport.connected:
                return
            self._mark_lost(connection, transport)
        if connection.state != ConnectionState.DISCONNECTED:
            return
        if connection.retry_task is not None and not connection.retry_task.done():
            return
        if connection.retry_attempt >= len(self.retry_delays):
            connection.retry_attempt = 0
        self._schedule_retry(connection)

    # Caller operations

    async def call_tool(
        self,
        name: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> types.CallToolResult:
        """Invoke ``tool`` on server ``name``.

        Raises:
            UnknownServerError: No such server.
            ToolPermissionError: The tool is disabled for this server.
            ServerConnectionError: The server is not connected.
            CallTimeoutError: The call exceeded its budget.
            TransportError: The call failed in transit.
        """
        self.executor.authorize(self._require(name).server, tool)
        connection, transport = await self._active_transport(name)
        connection.request_count += 1
        try:
            return await self.executor.call(
                connection.server, transport, tool, arguments, timeout
            )
        except TransportError:
            connection.error_count += 1
            if not transport.connected:
                self._mark_lost(connection, transport)
            raise
        except CallTimeoutError:
            connection.error_count += 1
            raise

    async def read_resource(
        self, name: str, uri: str, timeout: Optional[float] = None
    ) -> types.ReadResourceResult:
        connection, transport = await self._active_transport(name)
        connection.request_count += 1
        try:
            return await self.executor.read(connection.server, transport, uri, timeout)
        except TransportError:
            connection.error_count += 1
            if not transport.connected:
                self._mark_lost(connection, transport)
            raise
        except CallTimeoutError:
            connection.error_count += 1
            raise

    async def get_tools_for(self, name: str, refresh: bool = True) -> ToolListing:
        """Visible tools of ``name`` under its current permission policy.

        Served live when connected (and ``refresh``), otherwise from the last
        successful listing flagged as stale.

        Raises:
            ServerConnectionError: Not connected and nothing cached.
        """
        connection = await self._settled(name)
        tools = await self._refresh(connection, "tools", refresh)
        if tools is not None:
            return ToolListing(
                name,
                filter_tools(tools, connection.server),
                stale=False,
                updated_at=connection.cache_updated_at,
            )

        if connection.tool_cache is None:
            raise ServerConnectionError(
                name, f"server is {connection.state.value} and no tool list is cached"
            )
        return ToolListing(
            name,
            filter_tools(connection.tool_cache, connection.server),
            stale=True,
            updated_at=connection.cache_updated_at,
        )

    async def get_resources_for(self, name: str, refresh: bool = True) -> ResourceListing:
        connection = await self._settled(name)
        resources = await self._refresh(connection, "resources", refresh)
        if resources is not None:
            return ResourceListing(
                name, resources, stale=False, updated_at=connection.cache_updated_at
            )

        if connection.resource_cache is None:
            raise ServerConnectionError(
                name,
                f"server is {connection.state.value} and no resource list is cached",
            )
        return ResourceListing(
            name,
            list(connection.resource_cache),
            stale=True,
            updated_at=connection.cache_updated_at,
        )

    async def _refresh(
        self, connection: Connection, kind: str, refresh: bool
    ) -> Optional[list]:
        """Fresh listing, the cache when it is current, or None if stale."""
        cache = connection.tool_cache if kind == "tools" else connection.resource_cache
        if not connection.is_connected:
            self._trigger_reconnect(connection)
            return None
        if not refresh and cache is not None:
            return list(cache)

        transport = connection.transport
        listing = transport.list_tools if kind == "tools" else transport.list_resources
        try:
            items = await asyncio.wait_for(
                listing(), timeout=connection.server.timeout_seconds
            )
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Could not list {kind} from {connection.name}, serving cache: "
                f"{describe_error(e)}"
            )
            if not transport.connected:
                self._mark_lost(connection, transport)
            return None

        if kind == "tools":
            connection.update_caches(tools=items)
        else:
            connection.update_caches(resources=items)
        self._spawn(self._persist_cache())
        return items

    async def _settled(self, name: str) -> Connection:
        """Wait for any connect/restart in progress on ``name``."""
        self._require(name)
        async with self._lock_for(name):
            pass
        return self._require(name)

    async def _active_transport(self, name: str) -> Tuple[Connection, Transport]:
        connection = await self._settled(name)
        if not connection.is_connected:
            self._trigger_reconnect(connection)
            detail = f": {connection.last_error}" if connection.last_error else ""
            raise ServerConnectionError(
                name, f"server is {connection.state.value}{detail}"
            )
        return connection, connection.transport

    # Introspection

    def list_servers(self) -> List[ServerStatus]:
        statuses = [connection.status() for connection in self._connections.values()]
        for name, server in self._disabled.items():
            statuses.append(
                ServerStatus(
                    name=name,
                    transport=server.transport,
                    state=None,
                    disabled=True,
                    watch_paths=list(server.watch_paths),
                )
            )
        return statuses

    def get_server_config(self, name: str) -> ServerConfig:
        return self._require(name).server

    def get_state(self, name: str) -> ConnectionState:
        return self._require(name).state

    def get_active_servers(self) -> List[str]:
        return [name for name, c in self._connections.items() if c.is_connected]

    @property
    def server_names(self) -> List[str]:
        return list(self._connections)

    def _require(self, name: str) -> Connection:
        connection = self._connections.get(name)
        if connection is None:
            if name in self._disabled:
                raise ServerConnectionError(name, "server is disabled")
            raise UnknownServerError(name)
        return connection

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    # Persisted metadata cache

    async def load_cache(self) -> None:
        """Load last-known tool/resource listings saved by a previous run."""
        if self.state_store is None:
            return
        data = await self.state_store.load_json(self.state_store.tool_cache_path, {})
        servers = data.get("servers", {}) if isinstance(data, dict) else {}
        for name, entry in servers.items():
            try:
                tools = [types.Tool.model_validate(t) for t in entry.get("tools", [])]
                resources = [
                    types.Resource.model_validate(r)
                    for r in entry.get("resources", [])
                ]
                updated_at = entry.get("updatedAt")
                self._persisted[name] = {
                    "tools": tools,
                    "resources": resources,
                    "updated_at": datetime.fromisoformat(updated_at)
                    if updated_at
                    else None,
                }
            except (ValidationError, ValueError, AttributeError, TypeError) as e:
                logger.warning(f"Ignoring cached metadata for {name}: {e}")
        logger.debug(f"Loaded cached metadata for {len(self._persisted)} server(s)")

    def _seed_from_persisted(self, connection: Connection) -> None:
        entry = self._persisted.get(connection.name)
        if entry is None:
            return
        connection.update_caches(
            entry["tools"], entry["resources"], updated_at=entry["updated_at"]
        )

    def _cache_snapshot(self) -> Dict[str, Any]:
        servers = {}
        for name, connection in self._connections.items():
            if connection.tool_cache is None and connection.resource_cache is None:
                continue
            servers[name] = {
                "tools": [
                    tool.model_dump(mode="json", exclude_none=True)
                    for tool in connection.tool_cache or []
                ],
                "resources": [
                    resource.model_dump(mode="json", exclude_none=True)
                    for resource in connection.resource_cache or []
                ],
                "updatedAt": connection.cache_updated_at.isoformat()
                if connection.cache_updated_at
                else None,
            }
        return {"servers": servers}

    async def _persist_cache(self) -> None:
        if self.state_store is None:
            return
        try:
            await self.state_store.save_json(
                self.state_store.tool_cache_path, self._cache_snapshot
            )
            self.last_write_error = None
        except WriteError as e:
            self.last_write_error = str(e)
            logger.error(f"Failed to persist tool cache: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    async def _drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")
