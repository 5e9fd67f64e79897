"""
Two-tier cache for Northpass API data.

A fast in-process tier (dict) sits in front of a persistent key/value tier
(one JSON file per key by default). Entries expire lazily: an expired entry
is dropped the first time it is read. Values must be JSON-compatible, since
anything written to the persistent tier comes back through ``json.loads``.

Usage:
    cache = CacheService(FileStore(cfg.cache_dir, cfg.cache_max_entries))
    fetch_groups = cache.wrap(_fetch_groups, "group_list", duration=600)
"""

import functools
import hashlib
import inspect
import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

CACHE_PREFIX = "northpass_cache_"
DEFAULT_CACHE_DURATION = 4 * 60 * 60  # seconds

_MISSING = object()


class StoreFullError(Exception):
    """Raised by a persistent store that has no room for another entry."""


class PersistentStore(Protocol):
    """Key/value storage behind the in-memory tier. Values are JSON strings."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStore:
    """Process-local PersistentStore, mostly for tests and cache-less runs."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._max_entries = max_entries

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if (
            self._max_entries is not None
            and key not in self._data
            and len(self._data) >= self._max_entries
        ):
            raise StoreFullError(f"store holds {len(self._data)} entries")
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileStore:
    """
    PersistentStore keeping one ``<key>.json`` file per entry in a directory.

    The directory is listed once, on construction; after that the key index
    lives in memory so a write never scans the directory.
    """

    def __init__(self, directory: Path | str, max_entries: int = 2000) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._max_entries = max_entries
        self._keys = {p.stem for p in self._dir.glob(f"{CACHE_PREFIX}*.json")}

    def _path(self, key: str) -> Path:
        return self._dir / f"{key.replace('/', '_')}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        if path.stem not in self._keys and len(self._keys) >= self._max_entries:
            raise StoreFullError(f"{self._dir} holds {self._max_entries} entries")
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)
        self._keys.add(path.stem)

    def delete(self, key: str) -> None:
        path = self._path(key)
        path.unlink(missing_ok=True)
        self._keys.discard(path.stem)

    def keys(self) -> list[str]:
        return list(self._keys)


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    expires: float
    duration: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        payload = json.loads(raw)
        return cls(
            data=payload["data"],
            timestamp=float(payload["timestamp"]),
            expires=float(payload["expires"]),
            duration=float(payload["duration"]),
        )


class CacheService:
    """
    Memory + persistent cache with TTL, namespaced by data type.

    Read/write failures never reach the caller: they are logged and the
    operation behaves like a miss (reads) or a memory-only write (writes).
    """

    def __init__(
        self,
        store: PersistentStore | None = None,
        default_duration: float = DEFAULT_CACHE_DURATION,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._memory: dict[str, CacheEntry] = {}
        self._store = store if store is not None else MemoryStore()
        self._default_duration = default_duration
        self._clock = clock
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "clears": 0, "expired": 0}

    # --- Keys ---

    @staticmethod
    def generate_key(cache_type: str, params: Any) -> str:
        """Deterministic key for (type, params); dict key order is irrelevant."""
        serialized = json.dumps(params, sort_keys=True, default=str)
        digest = hashlib.sha1(serialized.encode("utf-8")).hexdigest()[:16]
        return f"{CACHE_PREFIX}{cache_type}_{digest}"

    # --- Reads / writes ---

    def _lookup(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if entry.is_valid(now):
                    self._stats["hits"] += 1
                    logger.debug("Memory cache HIT: %s", key)
                    return entry.data
                del self._memory[key]
                self._stats["expired"] += 1

            try:
                raw = self._store.get(key)
                if raw is not None:
                    entry = CacheEntry.from_json(raw)
                    if entry.is_valid(now):
                        self._memory[key] = entry
                        self._stats["hits"] += 1
                        logger.debug("Persistent cache HIT: %s", key)
                        return entry.data
                    self._store.delete(key)
                    self._stats["expired"] += 1
                    logger.debug("Cache EXPIRED: %s", key)
            except Exception:
                logger.warning("Cache read failed for %s; treating as miss", key, exc_info=True)

            self._stats["misses"] += 1
            logger.debug("Cache MISS: %s", key)
            return _MISSING

    def get(self, key: str) -> Any | None:
        """Return cached data, or None if absent or expired."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def set(self, key: str, data: Any, duration: float | None = None) -> None:
        """Store data in both tiers. A full persistent tier degrades to memory-only."""
        duration = self._default_duration if duration is None else duration
        now = self._clock()
        entry = CacheEntry(data=data, timestamp=now, expires=now + duration, duration=duration)

        with self._lock:
            self._memory[key] = entry
            try:
                serialized = entry.to_json()
            except (TypeError, ValueError):
                logger.warning("Value for %s is not JSON-serialisable; memory only", key)
                return

            try:
                self._store.set(key, serialized)
            except StoreFullError:
                logger.warning("Persistent cache full, clearing expired entries")
                self._clear_expired_persistent(now)
                try:
                    self._store.set(key, serialized)
                except StoreFullError:
                    logger.warning("Still cannot persist %s after cleanup, using memory only", key)
            except Exception:
                logger.warning("Cache write failed for %s; memory only", key, exc_info=True)
                return
            logger.debug("Cached: %s (expires in %d minutes)", key, round(duration / 60))

    def delete(self, key: str) -> None:
        with self._lock:
            self._memory.pop(key, None)
            try:
                self._store.delete(key)
            except Exception:
                logger.warning("Cache delete failed for %s", key, exc_info=True)

    # --- Invalidation ---

    def _clear_expired_persistent(self, now: float) -> int:
        removed = 0
        for key in self._store.keys():
            try:
                raw = self._store.get(key)
                if raw is not None and CacheEntry.from_json(raw).is_valid(now):
                    continue
            except (ValueError, KeyError, TypeError):
                pass  # corrupted entry, drop it
            self._store.delete(key)
            removed += 1
        return removed

    def clear_expired(self) -> int:
        """Remove expired entries from both tiers. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._memory.items() if not e.is_valid(now)]
            for key in stale:
                del self._memory[key]
            try:
                removed = len(stale) + self._clear_expired_persistent(now)
            except Exception:
                logger.warning("Cache cleanup failed", exc_info=True)
                removed = len(stale)
        if removed:
            logger.info("Cleaned up %d expired cache entries", removed)
        return removed

    def _clear_matching(self, pattern: re.Pattern) -> int:
        with self._lock:
            memory_keys = [k for k in self._memory if pattern.match(k)]
            for key in memory_keys:
                del self._memory[key]
            try:
                store_keys = [k for k in self._store.keys() if pattern.match(k)]
                for key in store_keys:
                    self._store.delete(key)
            except Exception:
                logger.warning("Cache clear failed for %s", pattern.pattern, exc_info=True)
                store_keys = []
            self._stats["clears"] += 1
        return len(set(memory_keys) | set(store_keys))

    def clear_all(self) -> int:
        cleared = self._clear_matching(re.compile(re.escape(CACHE_PREFIX)))
        logger.info("Cleared %d cache entries", cleared)
        return cleared

    def clear_by_type(self, cache_type: str) -> int:
        """Clear one type exactly: ``course`` leaves ``course_npcu`` alone."""
        pattern = re.compile(rf"{re.escape(CACHE_PREFIX + cache_type)}_[0-9a-f]{{16}}$")
        cleared = self._clear_matching(pattern)
        logger.info("Cleared %d %s cache entries", cleared, cache_type)
        return cleared

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            try:
                persistent = sum(1 for k in self._store.keys() if k.startswith(CACHE_PREFIX))
            except Exception:
                logger.warning("Could not count persistent cache entries", exc_info=True)
                persistent = 0
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "memoryEntries": len(self._memory),
                "persistentEntries": persistent,
                "hitRate": round(self._stats["hits"] / lookups * 100) if lookups else 0,
            }

    # --- Wrapping ---

    def wrap(self, fn: Callable, cache_type: str, duration: float | None = None) -> Callable:
        """
        Return ``fn`` with read-through caching keyed by (cache_type, arguments).

        Works for plain and async functions. Exceptions are not cached and
        reach the caller unchanged.
        """

        def _key(args: tuple, kwargs: dict) -> str:
            return self.generate_key(cache_type, {"args": list(args), "kwargs": kwargs})

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def cached_async(*args, **kwargs):
                key = _key(args, kwargs)
                hit = self._lookup(key)
                if hit is not _MISSING:
                    return hit
                logger.debug("Fetching fresh data: %s", cache_type)
                result = await fn(*args, **kwargs)
                self.set(key, result, duration)
                return result

            return cached_async

        @functools.wraps(fn)
        def cached(*args, **kwargs):
            key = _key(args, kwargs)
            hit = self._lookup(key)
            if hit is not _MISSING:
                return hit
            logger.debug("Fetching fresh data: %s", cache_type)
            result = fn(*args, **kwargs)
            self.set(key, result, duration)
            return result

        return cached
