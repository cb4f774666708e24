"""Hub state files, written through AtomicStore under a per-path lock."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from ..errors import CorruptDocumentError
from .atomic import AtomicStore

logger = logging.getLogger(__name__)

RESOLVED_CONFIG_FILE = "resolved-config.json"
TOOL_CACHE_FILE = "tool-cache.json"


class StateStore:
    """Serializes writers per path and keeps the event loop free during I/O."""

    def __init__(self, state_dir: Union[str, Path], store: Optional[AtomicStore] = None):
        self.state_dir = Path(state_dir)
        self.store = store or AtomicStore()
        self._locks: Dict[Path, asyncio.Lock] = {}

    @property
    def resolved_config_path(self) -> Path:
        return self.state_dir / RESOLVED_CONFIG_FILE

    @property
    def tool_cache_path(self) -> Path:
        return self.state_dir / TOOL_CACHE_FILE

    def _lock_for(self, path: Path) -> asyncio.Lock:
        key = path.resolve()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def save_json(self, path: Union[str, Path], snapshot: Callable[[], Any]) -> None:
        """Write the document produced by ``snapshot()``.

        The snapshot is taken after the lock is acquired, so a writer that
        waited can never replace a newer document with an older one.

        Raises:
            WriteError: If the atomic write fails.
        """
        path = Path(path)
        async with self._lock_for(path):
            data = snapshot()
            await asyncio.to_thread(self.store.write_json, path, data)
        logger.debug(f"Saved state file {path}")

    async def load_json(self, path: Union[str, Path], default: Any = None) -> Any:
        """Read a state document; a corrupt document is reported and ignored."""
        path = Path(path)
        try:
            return await asyncio.to_thread(self.store.read_json, path, default)
        except CorruptDocumentError as e:
            logger.warning(f"Ignoring unreadable state file: {e}")
            return default
