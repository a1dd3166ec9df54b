"""Cache Store — bounded LRU cache with sliding TTL.

Keys are derived from (operation, args, options) via SHA-256 over a
canonical JSON rendering (object keys sorted at every level), namespaced
with the operation name so different operations never collide.

Eviction:
  - size-based LRU (item count and aggregate byte budget)
  - TTL expiry, enforced lazily on read and by ``prune()``
  - TTL is measured from the last access (sliding expiration)

TTL boundary: an entry last touched at t0 is a hit at t0 + ttl and a
miss at any time after it.

Thread-safe via an internal lock.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from genrelay.gateway.types import CacheConfig

logger = logging.getLogger(__name__)


class _Miss:
    """Sentinel returned by ``CacheStore.get`` on a miss."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


@dataclass
class CacheEntry:
    """A single cached value."""

    key: str
    value: Any
    created_at: float  # clock() at insertion
    accessed_at: float  # clock() at last read or write
    size: int = 0  # Estimated bytes
    hits: int = 0
    metadata: dict[str, Any] | None = field(default=None)


def _normalize(value: Any) -> Any:
    """Make a value JSON-renderable with a stable order: str keys, sorted sets."""
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=_canonical)
    return value


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=repr)


def _estimate_size(value: Any) -> int:
    try:
        return len(json.dumps(value, ensure_ascii=False, default=repr).encode("utf-8"))
    except (TypeError, ValueError):
        return len(repr(value).encode("utf-8"))


class CacheStore:
    """Bounded LRU/TTL cache for dispatch results.

    Usage:
        cache = CacheStore(CacheConfig(ttl_seconds=300, max_items=500))
        key = cache.key("embed", ("hello",), {"model": "text-embedding-3-small"})
        value = cache.get(key)
        if value is MISS:
            value = await compute()
            cache.set(key, value)
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic):
        config = config or CacheConfig()
        self.namespace = config.namespace
        self.ttl = config.ttl_seconds
        self.max_items = config.max_items
        self.max_bytes = config.max_bytes
        self.enabled = config.enabled
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # -- Keys ---------------------------------------------------------------

    def key(self, operation: str, args: Any = (), options: dict | None = None) -> str:
        """Deterministic key for an operation call."""
        payload = {
            "namespace": self.namespace,
            "operation": operation,
            "args": list(args) if isinstance(args, (list, tuple)) else [args],
            "options": options or {},
        }
        digest = hashlib.sha256(_canonical(_normalize(payload)).encode("utf-8")).hexdigest()
        return f"{self.namespace}:{operation}:{digest}"

    def text_generation_key(self, prompt: str, options: dict | None = None, backend: str = "", model: str = "") -> str:
        return self.key("generate_text", (prompt,), {**(options or {}), "backend": backend, "model": model})

    def embedding_key(self, text: str, backend: str = "", model: str = "") -> str:
        return self.key("embed", (text,), {"backend": backend, "model": model})

    # -- Core operations ----------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the cached value or ``MISS``."""
        if not self.enabled:
            return MISS

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return MISS

            now = self._clock()
            if not isinstance(entry, CacheEntry):
                logger.warning("Dropping unreadable cache entry %s", key)
                self._remove(key)
                self._misses += 1
                return MISS

            if now - entry.accessed_at > self.ttl:
                self._remove(key)
                self._evictions += 1
                self._misses += 1
                return MISS

            entry.hits += 1
            entry.accessed_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, metadata: dict | None = None) -> bool:
        """Store a value; returns False when disabled or the value is too large."""
        if not self.enabled:
            return False

        size = _estimate_size(value)
        if size > self.max_bytes:
            logger.debug("Not caching %s: %d bytes exceeds budget of %d", key, size, self.max_bytes)
            # A rejected write must not leave the previous value readable
            with self._lock:
                if key in self._entries:
                    self._remove(key)
            return False

        with self._lock:
            now = self._clock()
            if key in self._entries:
                self._remove(key)
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                accessed_at=now,
                size=size,
                metadata=metadata,
            )
            self._bytes += size
            self._evict_over_budget()
        return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def clear(self) -> None:
        """Remove every entry and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._bytes = 0
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def has(self, key: str) -> bool:
        """Check presence without touching stats or recency."""
        with self._lock:
            entry = self._entries.get(key)
            return isinstance(entry, CacheEntry) and self._clock() - entry.accessed_at <= self.ttl

    def prune(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now - e.accessed_at > self.ttl]
            for key in expired:
                self._remove(key)
            self._evictions += len(expired)
            return len(expired)

    async def get_or_set(self, key: str, factory: Callable[[], Awaitable[Any]], metadata: dict | None = None) -> Any:
        """Return the cached value or compute, store and return it."""
        value = self.get(key)
        if value is not MISS:
            return value
        value = await factory()
        self.set(key, value, metadata)
        return value

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if not enabled:
            self.clear()

    # -- Introspection ------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def entries(self) -> list[dict]:
        with self._lock:
            now = self._clock()
            return [
                {"key": e.key, "metadata": e.metadata, "age": now - e.created_at, "hits": e.hits}
                for e in self._entries.values()
            ]

    def stats(self) -> dict:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 2) if lookups else 0.0,
                "items": len(self._entries),
                "bytes": self._bytes,
                "max_items": self.max_items,
                "max_bytes": self.max_bytes,
                "enabled": self.enabled,
            }

    def export(self) -> dict[str, dict]:
        """Contents as plain dicts (ages relative to now)."""
        with self._lock:
            now = self._clock()
            return {
                key: {
                    "value": e.value,
                    "age": now - e.accessed_at,
                    "hits": e.hits,
                    "metadata": e.metadata,
                }
                for key, e in self._entries.items()
            }

    def load(self, data: dict[str, dict]) -> int:
        """Replace contents with exported data. Malformed records are skipped."""
        self.clear()
        loaded = 0
        for key, record in data.items():
            if not isinstance(record, dict) or "value" not in record:
                logger.warning("Skipping malformed cache record %s", key)
                continue
            if not self.set(key, record["value"], record.get("metadata")):
                continue
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.hits = int(record.get("hits", 0))
                    entry.accessed_at -= float(record.get("age", 0.0))
            loaded += 1
        return loaded

    # -- Internals (caller holds the lock) ----------------------------------

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._bytes -= getattr(entry, "size", 0)

    def _evict_over_budget(self) -> None:
        while self._entries and (len(self._entries) > self.max_items or self._bytes > self.max_bytes):
            key, entry = self._entries.popitem(last=False)
            self._bytes -= entry.size
            self._evictions += 1
            logger.debug("Evicted cache entry %s", key)
