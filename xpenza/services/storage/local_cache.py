"""
Local Persistent Cache

Key-value storage of serialized JSON blobs that survives process restarts.
The sync store writes its state here after every change and reads it once
at startup, so the UI has data before the first remote snapshot arrives.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from xpenza.services.storage.interface import LocalCacheInterface, StorageError


_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


class JsonFileCache(LocalCacheInterface):
    """
    One file per key under a cache directory.

    Writes go to a temporary file first and are moved into place, so a
    crash mid-write never leaves a truncated blob behind.
    """

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise StorageError(f"Invalid cache key: {key!r}")
        return self._directory / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read cache entry {key}: {e}")

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, path)
        except OSError as e:
            raise StorageError(f"Failed to write cache entry {key}: {e}")

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove cache entry {key}: {e}")


class InMemoryCache(LocalCacheInterface):
    """Process-local cache for tests; `writes` counts set_item calls."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._items: dict[str, str] = dict(initial or {})
        self.writes = 0

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.writes += 1
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)
