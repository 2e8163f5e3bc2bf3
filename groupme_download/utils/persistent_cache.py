"""JSON-backed key/value store with optional per-entry TTL.

Used as the attachment locator index. Writes go through `atomic_write_json`,
so the file on disk is always a complete snapshot. With `autosave=False`
changes accumulate in memory until `flush()`, which keeps the cost of a large
index to one rewrite per batch instead of one per entry.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Union

from groupme_download.utils.atomic import atomic_write_json

logger = logging.getLogger(__name__)


class PersistentCache:
    """Persistent mapping of string keys to JSON objects.

    Every entry carries a `cached_at` unix timestamp, added on `set()` when
    missing, and expires `ttl_seconds` later (never with a TTL of 0).

    Args:
        path: JSON file backing the cache; its directory is created if needed.
        ttl_seconds: Lifetime of an entry, 0 for no expiry.
        autosave: Write the file on every change instead of on `flush()`.
    """

    def __init__(self, path: Union[str, Path], ttl_seconds: int = 7 * 24 * 60 * 60, autosave: bool = True):
        self._path = Path(path)
        self._ttl = int(ttl_seconds)
        self._autosave = autosave
        self._dirty = False
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load cache from {self._path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _changed(self) -> None:
        # Caller holds the lock
        self._dirty = True
        if self._autosave:
            self._write()

    def _write(self) -> None:
        try:
            atomic_write_json(self._path, self._data, prefix=".tmp_cache_")
        except OSError as e:
            logger.warning(f"Failed to save cache to {self._path}: {e}")
            return
        self._dirty = False

    def _expired(self, entry: Dict[str, Any]) -> bool:
        if self._ttl == 0:
            return False
        try:
            cached_at = int(entry.get("cached_at", 0))
        except (TypeError, ValueError):
            return True
        return cached_at + self._ttl <= int(time.time())

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live entry for `key`, or `default` when absent or expired."""
        with self._lock:
            entry = self._data.get(key)
        if not isinstance(entry, dict) or self._expired(entry):
            return default
        return entry

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            entry = dict(value)
            entry.setdefault("cached_at", int(time.time()))
            self._data[key] = entry
            self._changed()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._changed()

    def flush(self) -> None:
        """Write pending changes, if any."""
        with self._lock:
            if self._dirty:
                self._write()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
