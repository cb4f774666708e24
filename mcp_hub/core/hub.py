"""MCP hub: the caller-facing API over all configured servers."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import mcp.types as types

from ..config.loader import ConfigLoader, snapshot
from ..config.models import HubConfig
from ..config.secrets import SecretsProvider
from ..errors import ConfigError
from ..persistence.state import StateStore
from ..server.connection import ResourceListing, ServerStatus, ToolListing
from ..server.manager import ConnectionManager
from ..transport.factory import TransportFactory, create_transport
from .file_watcher import FileWatcher

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

CONFIG_WATCH_KEY = "__config__"


class MCPHub:
    """Connection hub for external MCP servers.

    Loads the global and project configuration layers, keeps one connection
    per enabled server, and reloads itself when either file changes.
    """

    def __init__(
        self,
        project_config: Optional[PathLike] = None,
        global_config: Optional[PathLike] = None,
        secrets: Optional[SecretsProvider] = None,
        transport_factory: TransportFactory = create_transport,
        base_dir: Optional[PathLike] = None,
    ):
        self.project_config = (
            Path(project_config).expanduser().absolute() if project_config else None
        )
        self.global_config = (
            Path(global_config).expanduser().absolute() if global_config else None
        )
        if base_dir is not None:
            self.base_dir = Path(base_dir)
        elif self.project_config is not None:
            self.base_dir = self.project_config.parent
        else:
            self.base_dir = Path.cwd()

        self.loader = ConfigLoader(secrets)
        self.transport_factory = transport_factory

        # Runtime state
        self.config: Optional[HubConfig] = None
        self.manager: Optional[ConnectionManager] = None
        self.state_store: Optional[StateStore] = None
        self.config_watcher: Optional[FileWatcher] = None
        self.start_time: Optional[datetime] = None
        self.last_reload_error: Optional[str] = None

    async def __aenter__(self) -> "MCPHub":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Load configuration and connect every enabled server in parallel.

        Raises:
            ConfigError: If a configuration file cannot be parsed at all.
                Individual invalid servers are skipped and logged instead.
            WriteError: If the resolved configuration cannot be persisted.
        """
        if self.manager is not None:
            raise RuntimeError("MCP hub is already running")

        self.start_time = datetime.now()
        logger.info("Starting MCP hub")

        try:
            config = self.loader.load_layers(
                self.global_config, self.project_config, strict=False
            )
            self.config = config
            settings = config.hub

            self.state_store = StateStore(self._resolve(settings.state_dir))
            self.manager = ConnectionManager(
                transport_factory=self.transport_factory,
                state_store=self.state_store,
                retry_delays=settings.retry_delays,
                debounce_seconds=settings.debounce_seconds,
                poll_interval=settings.poll_interval_seconds,
                base_dir=self.base_dir,
            )

            await self._save_snapshot()
            await self.manager.load_cache()
            await self.manager.reconcile(self.loader.resolve(config).servers)

            if settings.watch_config:
                self._watch_config_files()

            logger.info(
                f"MCP hub '{settings.name}' ready with "
                f"{len(self.manager.get_active_servers())}/"
                f"{len(self.manager.server_names)} servers connected"
            )
        except Exception as e:
            logger.error(f"Error starting MCP hub: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Disconnect every server and stop watching files."""
        logger.info("Stopping MCP hub")
        if self.config_watcher is not None:
            await self.config_watcher.close()
            self.config_watcher = None
        if self.manager is not None:
            await self.manager.stop()
            self.manager = None

    async def reload_config(self) -> bool:
        """Reload both layers and apply the differences.

        A configuration that cannot be parsed is rejected and the running
        configuration stays in effect. Returns True if the new configuration
        was applied.
        """
        manager = self._require_running()
        logger.info("Reloading configuration")

        try:
            config = self.loader.load_layers(
                self.global_config, self.project_config, strict=False
            )
        except ConfigError as e:
            self.last_reload_error = str(e)
            logger.error(f"Configuration reload skipped: {e}")
            return False

        self.config = config
        self.last_reload_error = None
        manager.retry_delays = tuple(config.hub.retry_delays)
        manager.watcher.debounce_seconds = config.hub.debounce_seconds

        await self._save_snapshot()
        await manager.reconcile(self.loader.resolve(config).servers)
        logger.info("Configuration reloaded successfully")
        return True

    # Caller API

    async def list_servers(self) -> List[ServerStatus]:
        return self._require_running().list_servers()

    async def list_tools(self, server: str) -> ToolListing:
        """Visible tools of ``server``; ``stale`` when served from cache."""
        return await self._require_running().get_tools_for(server)

    async def call_tool(
        self,
        server: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> types.CallToolResult:
        return await self._require_running().call_tool(server, tool, arguments, timeout)

    async def list_resources(self, server: str) -> ResourceListing:
        return await self._require_running().get_resources_for(server)

    async def read_resource(
        self, server: str, uri: str, timeout: Optional[float] = None
    ) -> types.ReadResourceResult:
        return await self._require_running().read_resource(server, uri, timeout)

    @property
    def server_names(self) -> List[str]:
        return self.manager.server_names if self.manager else []

    def get_status(self) -> Dict[str, Any]:
        """Get overall hub status."""
        uptime = (
            (datetime.now() - self.start_time).total_seconds() if self.start_time else 0
        )
        settings = self.config.hub if self.config else None
        servers = self.manager.list_servers() if self.manager else []

        return {
            "hub": {
                "name": settings.name if settings else None,
                "version": settings.version if settings else None,
                "uptime_seconds": uptime,
                "start_time": self.start_time.isoformat() if self.start_time else None,
                "project_config": str(self.project_config)
                if self.project_config
                else None,
                "global_config": str(self.global_config) if self.global_config else None,
            },
            "servers": [status.to_dict() for status in servers],
            "config_errors": list(self.config.errors) if self.config else [],
            "last_reload_error": self.last_reload_error,
            "last_write_error": self.manager.last_write_error if self.manager else None,
        }

    # Internals

    def _require_running(self) -> ConnectionManager:
        if self.manager is None:
            raise RuntimeError("MCP hub is not running")
        return self.manager

    def _resolve(self, path: PathLike) -> Path:
        path = Path(path).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    async def _save_snapshot(self) -> None:
        # Taken before secret substitution so secrets never reach the disk
        await self.state_store.save_json(
            self.state_store.resolved_config_path, lambda: snapshot(self.config)
        )

    def _watch_config_files(self) -> None:
        paths = [p for p in (self.global_config, self.project_config) if p is not None]
        if not paths:
            return
        settings = self.config.hub
        self.config_watcher = FileWatcher(
            self._on_config_change,
            debounce_seconds=settings.debounce_seconds,
            poll_interval=settings.poll_interval_seconds,
            base_dir=self.base_dir,
        )
        self.config_watcher.watch(CONFIG_WATCH_KEY, paths)

    async def _on_config_change(self, key: str) -> None:
        logger.info("Configuration file changed, reloading...")
        await self.reload_config()
