"""Filesystem watcher that turns bursts of changes into one callback per key."""

import asyncio
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class WatchEvent:
    key: str
    path: Path


class FileWatcher:
    """Watches paths per key and calls ``on_change(key)`` once per burst.

    Each key gets a polling task that compares file fingerprints (mtime, size,
    inode; directories also fingerprint their direct children). Detected
    changes are posted to a queue; a single dispatcher task debounces them
    per key, so N changes within the quiet window cause exactly one call.
    """

    def __init__(
        self,
        on_change: Callable[[str], Awaitable[None]],
        debounce_seconds: float = 0.3,
        poll_interval: float = 0.1,
        base_dir: Optional[PathLike] = None,
    ):
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self._events: "asyncio.Queue[WatchEvent]" = asyncio.Queue()
        self._pollers: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._callbacks: Set[asyncio.Task] = set()
        self._dispatcher: Optional[asyncio.Task] = None

    def watch(self, key: str, paths: Iterable[PathLike]) -> None:
        """Start (or replace) the watch for ``key``. Empty ``paths`` unwatches."""
        self.unwatch(key)
        resolved = [self.resolve(path) for path in paths]
        if not resolved:
            return

        self._ensure_dispatcher()
        self._pollers[key] = asyncio.create_task(
            self._poll(key, resolved), name=f"watch_{key}"
        )
        logger.info(
            f"Watching {len(resolved)} path(s) for {key}: "
            + ", ".join(str(p) for p in resolved)
        )

    def unwatch(self, key: str) -> None:
        """Stop watching ``key`` and drop any pending debounced callback."""
        poller = self._pollers.pop(key, None)
        if poller is not None:
            poller.cancel()
            logger.debug(f"Stopped watching paths for {key}")
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def unwatch_all(self) -> None:
        for key in list(self._pollers):
            self.unwatch(key)

    def is_watching(self, key: str) -> bool:
        return key in self._pollers

    @property
    def watched_keys(self) -> List[str]:
        return list(self._pollers)

    def notify(self, key: str, path: PathLike) -> None:
        """Post a change event for a watched key."""
        self._ensure_dispatcher()
        self._events.put_nowait(WatchEvent(key, Path(path)))

    async def close(self) -> None:
        """Cancel every watch, pending timer and running callback."""
        tasks = list(self._pollers.values()) + list(self._timers.values())
        self.unwatch_all()
        tasks.extend(self._callbacks)
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
            self._dispatcher = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def resolve(self, path: PathLike) -> Path:
        path = Path(path).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(
                self._dispatch(), name="file_watch_dispatcher"
            )

    async def _poll(self, key: str, paths: List[Path]) -> None:
        # Filesystem scans stay off the event loop
        fingerprints = await asyncio.to_thread(fingerprint_all, paths)
        while True:
            await asyncio.sleep(self.poll_interval)
            snapshot = await asyncio.to_thread(fingerprint_all, paths)
            for path, current in snapshot.items():
                if current != fingerprints[path]:
                    fingerprints[path] = current
                    logger.debug(f"Change detected in {path} (watched by {key})")
                    self._events.put_nowait(WatchEvent(key, path))

    async def _dispatch(self) -> None:
        while True:
            event = await self._events.get()
            if event.key not in self._pollers:
                logger.debug(f"Dropping change event for unwatched key {event.key}")
                continue

            timer = self._timers.get(event.key)
            if timer is not None:
                timer.cancel()
            self._timers[event.key] = asyncio.create_task(
                self._fire_when_quiet(event.key), name=f"debounce_{event.key}"
            )

    async def _fire_when_quiet(self, key: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]

        # Run the callback in its own task so unwatch() cannot cut it short
        callback = asyncio.create_task(self._run_callback(key), name=f"on_change_{key}")
        self._callbacks.add(callback)
        callback.add_done_callback(self._callbacks.discard)

    async def _run_callback(self, key: str) -> None:
        logger.info(f"Watched files changed for {key}")
        try:
            await self.on_change(key)
        except Exception as e:
            logger.error(f"Change handler failed for {key}: {e}", exc_info=True)


def fingerprint(path: Path):
    """Cheap identity of a file or directory; None if it does not exist."""
    try:
        st = path.stat()
    except OSError:
        return None

    identity = (st.st_mtime_ns, st.st_size, st.st_ino)
    if not stat.S_ISDIR(st.st_mode):
        return identity

    children = []
    try:
        with os.scandir(path) as entries:
            for entry in entries:
                try:
                    child = entry.stat(follow_symlinks=False)
                except OSError:
                    continue
                children.append((entry.name, child.st_mtime_ns, child.st_size))
    except OSError:
        pass
    return identity + (tuple(sorted(children)),)


def fingerprint_all(paths: Iterable[Path]) -> Dict[Path, object]:
    return {path: fingerprint(path) for path in paths}
