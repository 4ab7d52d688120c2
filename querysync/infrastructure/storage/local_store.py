"""
Bounded Local Key-Value Store

The only state the engine persists beyond the process lifetime. Mirrors the
browser localStorage contract: string keys, JSON values, synchronous API.

Each value is serialized independently with orjson, so one corrupt value
never poisons the rest of the store. Every public operation is guarded:
unavailable storage or corrupt JSON falls back to the default and is
logged, never raised (degraded-dependency handling).

Storage:
    path=None  → in-memory only (still bounded)
    path=...   → a single JSON document, rewritten atomically on each write

Bound:
    Keys are kept in insertion order; once max_entries is exceeded the
    oldest keys are evicted.
"""

import os
import tempfile
import time
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path
from typing import Any

import orjson

from querysync.core.config.constants import SEARCH_CACHE_MAX_ITEMS, Stage
from querysync.core.exceptions import LocalStoreError
from querysync.core.logging.logger import get_logger, log_stage

logger = get_logger(__name__)

_MISSING = object()


class LocalKeyValueStore:
    """
    Bounded, guarded key-value store.

    Usage:
        store = LocalKeyValueStore(path="~/.cache/querysync/store.json")
        store.set("theme", "dark")
        store.get("theme", "light")           # "dark"
        store.set_with_ttl("org:1", org, 300_000)
        store.get_fresh("org:1")              # None once 5 minutes passed
    """

    def __init__(
        self,
        path: str | os.PathLike | None = None,
        max_entries: int = 500,
        clock: Callable[[], float] | None = None,
    ):
        self.path = Path(path).expanduser() if path else None
        self.max_entries = max_entries
        self._clock = clock or (lambda: time.time() * 1000)
        self._items: OrderedDict[str, bytes] = OrderedDict()
        self.available = True
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = self._read_file()
            document = orjson.loads(raw) if raw else {}
            if not isinstance(document, dict):
                raise LocalStoreError("Store document is not an object", details={"path": str(self.path)})
        except (LocalStoreError, orjson.JSONDecodeError) as e:
            log_stage(
                logger,
                Stage.LOCAL_STORE,
                "Local store unreadable, starting empty",
                level="warning",
                path=str(self.path),
                error=str(e),
            )
            return

        for key, value in document.items():
            if isinstance(value, str):
                self._items[key] = value.encode()
        self._enforce_bound()

    def _read_file(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as e:
            self.available = False
            raise LocalStoreError.from_exception(e, path=str(self.path)) from e

    def _flush(self) -> bool:
        if self.path is None:
            return True
        document = {key: value.decode() for key, value in self._items.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".store-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(orjson.dumps(document))
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            if self.available:
                log_stage(
                    logger,
                    Stage.LOCAL_STORE,
                    "Local store unavailable, continuing without persistence",
                    level="warning",
                    path=str(self.path),
                    error=str(e),
                )
            self.available = False
            return False

        self.available = True
        return True

    def _enforce_bound(self) -> None:
        while len(self._items) > self.max_entries:
            evicted, _ = self._items.popitem(last=False)
            log_stage(logger, Stage.LOCAL_STORE, "Local store bound reached, evicted key", level="debug", key=evicted)

    # ------------------------------------------------------------------
    # Public API (never raises)
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._items.get(key, _MISSING)
        if raw is _MISSING:
            return default
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            log_stage(logger, Stage.LOCAL_STORE, "Corrupt value in local store", level="warning", key=key)
            return default

    def set(self, key: str, value: Any) -> bool:
        """Store ``value``; returns False when it could not be serialized or persisted."""
        try:
            raw = orjson.dumps(value, option=orjson.OPT_NON_STR_KEYS)
        except TypeError as e:
            log_stage(logger, Stage.LOCAL_STORE, "Value is not JSON serializable", level="warning", key=key, error=str(e))
            return False

        self._items.pop(key, None)
        self._items[key] = raw
        self._enforce_bound()
        return self._flush()

    def remove(self, key: str) -> bool:
        if self._items.pop(key, _MISSING) is _MISSING:
            return False
        return self._flush()

    def clear(self) -> None:
        self._items.clear()
        self._flush()

    def keys(self) -> list[str]:
        return list(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    # ------------------------------------------------------------------
    # TTL helpers
    # ------------------------------------------------------------------

    def set_with_ttl(self, key: str, value: Any, ttl_ms: int) -> bool:
        return self.set(key, {"data": value, "timestamp": self._clock(), "ttl": ttl_ms})

    def get_fresh(self, key: str, default: Any = None) -> Any:
        """Value stored by set_with_ttl(), or ``default`` once it expired."""
        record = self.get(key)
        if not isinstance(record, dict) or "timestamp" not in record or "data" not in record:
            return default
        try:
            expired = self._clock() - float(record["timestamp"]) > float(record.get("ttl", 0))
        except (TypeError, ValueError):
            expired = True
        if expired:
            self.remove(key)
            return default
        return record["data"]

    def push_recent(self, key: str, value: Any, limit: int = SEARCH_CACHE_MAX_ITEMS) -> list:
        """Prepend ``value`` to the list under ``key`` keeping the latest ``limit`` items."""
        items = self.get(key, [])
        if not isinstance(items, list):
            items = []
        items = [value, *[item for item in items if item != value]][:limit]
        self.set(key, items)
        return items

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._items),
            "max_entries": self.max_entries,
            "bytes": sum(len(v) for v in self._items.values()),
            "persistent": self.path is not None,
            "available": self.available,
        }
