"""Atomic file operations for state persistence."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Union

from ..errors import CorruptDocumentError, WriteError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class AtomicStore:
    """Corruption-proof reads and writes of small JSON/text documents.

    Strategy for every write:
    1. Write to a temporary file in the target's directory (same filesystem)
    2. fsync and verify the temporary file
    3. Rename it over the target (atomic on POSIX and Windows)

    A reader therefore sees either the previous or the new complete document.
    The store does not lock; concurrent writers to one path must be serialized
    by the caller.
    """

    def __init__(self, indent: Optional[int] = 2):
        self.indent = indent

    def write_json(self, path: PathLike, data: Any) -> None:
        """Serialize ``data`` as JSON and atomically replace ``path``.

        Raises:
            WriteError: If serialization, verification or the rename fails.
        """

        def _dump(f) -> None:
            # json.dump feeds the file chunk by chunk, never one big string
            json.dump(data, f, indent=self.indent, ensure_ascii=False)
            f.write("\n")

        self._write(Path(path), _dump, _verify_json)

    def write_text(self, path: PathLike, content: str) -> None:
        """Atomically replace ``path`` with ``content``."""
        expected = len(content.encode("utf-8"))

        def _verify(temp_path: Path) -> None:
            size = temp_path.stat().st_size
            if size != expected:
                raise ValueError(f"wrote {size} bytes, expected {expected}")

        self._write(Path(path), lambda f: f.write(content), _verify)

    def read_json(self, path: PathLike, default: Any = None) -> Any:
        """Read a JSON document, returning ``default`` if it does not exist.

        Raises:
            CorruptDocumentError: If the file exists but is not valid JSON.
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return default
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptDocumentError(path, str(e)) from e

    def read_text(self, path: PathLike, default: Optional[str] = None) -> Optional[str]:
        """Read a text document, returning ``default`` if it does not exist."""
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return default

    def _write(
        self,
        path: Path,
        dump: Callable[[Any], None],
        verify: Callable[[Path], None],
    ) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.tmp."
            )
        except OSError as e:
            raise WriteError(path, str(e)) from e

        temp_path = Path(temp_name)
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                dump(f)
                f.flush()
                os.fsync(f.fileno())

            if temp_path.stat().st_size == 0:
                raise ValueError("serialized document is empty")
            verify(temp_path)

            os.replace(temp_path, path)
        except Exception as e:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as cleanup_error:
                logger.warning(
                    f"Could not remove temporary file {temp_path}: {cleanup_error}"
                )
            raise WriteError(path, str(e)) from e

        _fsync_directory(path.parent)


def _verify_json(temp_path: Path) -> None:
    with open(temp_path, "r", encoding="utf-8") as f:
        json.load(f)


def _fsync_directory(directory: Path) -> None:
    """Persist the rename itself. Not supported on every platform."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"Directory fsync not supported for {directory}: {e}")
    finally:
        os.close(fd)
