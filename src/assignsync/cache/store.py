"""
Generic TTL + LRU key-value cache with optional durable persistence.

Two independent eviction mechanisms:
- capacity: inserting a new key into a full cache evicts the least recently
  accessed entry, whether or not it has expired
- TTL: an entry is visible only while now < expires_at; expired entries are
  purged lazily on access and by cleanup_expired()/the periodic sweeper

Persisted shape (one blob under ``namespace``):
    {key: {"value": ..., "expires_at": ms, "last_accessed": ms}}
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from assignsync.cache.patterns import compile_glob

if TYPE_CHECKING:
    from collections.abc import Callable

    from assignsync.cache.storage import KeyValueStorage

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    """Cache sizing, TTL and persistence settings."""

    max_size: int = 100
    default_ttl_ms: int = 5 * 60 * 1000
    persist: bool = False
    namespace: str = "cache_data"

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        if self.default_ttl_ms <= 0:
            raise ValueError(f"default_ttl_ms must be > 0, got {self.default_ttl_ms}")
        if not self.namespace:
            raise ValueError("namespace must not be empty")


@dataclass
class CacheEntry:
    """One cached value with its expiry and recency."""

    key: str
    value: Any
    expires_at_ms: int
    last_accessed_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "expires_at": self.expires_at_ms,
            "last_accessed": self.last_accessed_ms,
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=key,
            value=data.get("value"),
            expires_at_ms=int(data["expires_at"]),
            last_accessed_ms=int(data.get("last_accessed", 0)),
        )


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time cache statistics."""

    hits: int
    misses: int
    evictions: int
    sets: int
    size: int
    max_size: int
    hit_rate: float  # 0.0 - 1.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "sets": self.sets,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": self.hit_rate,
        }


class CacheManager:
    """
    In-memory TTL/LRU cache owned by one component.

    Reads are synchronous. Mutations are async because they may persist.

    Usage:
        cache = CacheManager(CacheConfig(persist=True), storage=JsonFileStorage(path))
        await cache.load()
        await cache.set("group:1:items", items, ttl_ms=60_000)
        items = cache.get("group:1:items")
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        storage: KeyValueStorage | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        self.config = config or CacheConfig()
        if self.config.persist and storage is None:
            raise ValueError("persist=True requires a storage backend")
        self._storage = storage
        self._time_fn = time_fn
        # Ordered least -> most recently accessed
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sets = 0
        self._sweeper: asyncio.Task[None] | None = None

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def now_ms(self) -> int:
        """Current time on the cache clock."""
        return self._now_ms()

    def __len__(self) -> int:
        return len(self._entries)

    def _live_entry(self, key: str, now_ms: int) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now_ms):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        """Return the live value for ``key`` and mark it recently used."""
        now_ms = self._now_ms()
        entry = self._live_entry(key, now_ms)
        if entry is None:
            self._misses += 1
            return None
        entry.last_accessed_ms = now_ms
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value

    def peek(self, key: str) -> Any | None:
        """Return the live value without touching recency or counters."""
        entry = self._live_entry(key, self._now_ms())
        return entry.value if entry is not None else None

    def peek_entry(self, key: str) -> CacheEntry | None:
        return self._live_entry(key, self._now_ms())

    def has(self, key: str) -> bool:
        return self._live_entry(key, self._now_ms()) is not None

    def keys(self) -> list[str]:
        now_ms = self._now_ms()
        return [k for k, e in self._entries.items() if not e.is_expired(now_ms)]

    def items(self) -> list[tuple[str, Any]]:
        """Live (key, value) pairs, least recently used first."""
        now_ms = self._now_ms()
        return [(k, e.value) for k, e in self._entries.items() if not e.is_expired(now_ms)]

    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        """Insert or overwrite ``key``; evicts the LRU entry if full and key is new."""
        now_ms = self._now_ms()
        ttl = self.config.default_ttl_ms if ttl_ms is None else ttl_ms

        if key not in self._entries and len(self._entries) >= self.config.max_size:
            self._evict_lru()

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at_ms=now_ms + ttl,
            last_accessed_ms=now_ms,
        )
        self._entries.move_to_end(key)
        self._sets += 1
        await self._persist()

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        evicted_key, _ = self._entries.popitem(last=False)
        self._evictions += 1
        logger.debug(
            "cache_evicted", extra={"namespace": self.config.namespace, "key": evicted_key}
        )

    async def delete(self, key: str) -> bool:
        existed = self._entries.pop(key, None) is not None
        if existed:
            await self._persist()
        return existed

    async def invalidate(self, pattern: str) -> int:
        """
        Delete every key matching the glob ``pattern``.

        Returns:
            Number of entries removed. Zero matches is not an error.
        """
        regex = compile_glob(pattern)
        matched = [k for k in self._entries if regex.fullmatch(k)]
        for key in matched:
            del self._entries[key]
        if matched:
            await self._persist()
        logger.debug(
            "cache_invalidated",
            extra={"namespace": self.config.namespace, "pattern": pattern, "count": len(matched)},
        )
        return len(matched)

    async def clear(self) -> None:
        self._entries.clear()
        await self._persist()

    def cleanup_expired(self) -> int:
        """Purge every expired entry; returns the number removed."""
        now_ms = self._now_ms()
        expired = [k for k, e in self._entries.items() if e.is_expired(now_ms)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def sweep(self) -> int:
        """cleanup_expired() followed by a persist when anything was removed."""
        removed = self.cleanup_expired()
        if removed:
            await self._persist()
        return removed

    def start_sweeper(self, interval_s: float) -> None:
        """Start a background task sweeping expired entries every ``interval_s``."""
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(
            self._sweep_loop(interval_s), name=f"cache-sweeper-{self.config.namespace}"
        )

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            removed = await self.sweep()
            if removed:
                logger.debug(
                    "cache_swept",
                    extra={"namespace": self.config.namespace, "removed": removed},
                )

    async def close(self) -> None:
        """Stop the sweeper, if running."""
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
        self._sweeper = None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Serialisable view of all non-expired entries."""
        now_ms = self._now_ms()
        return {k: e.to_dict() for k, e in self._entries.items() if not e.is_expired(now_ms)}

    async def _persist(self) -> None:
        if not self.config.persist or self._storage is None:
            return
        try:
            await self._storage.set(self.config.namespace, self.snapshot())
        except (OSError, ValueError, TypeError):
            # In-memory state stays authoritative; the next mutation retries the write
            logger.exception("cache_persist_failed", extra={"namespace": self.config.namespace})

    async def persist(self) -> None:
        await self._persist()

    async def load(self) -> int:
        """
        Replace in-memory state with the persisted snapshot.

        Returns:
            Number of unexpired entries loaded.
        """
        if self._storage is None:
            return 0
        try:
            blob = await self._storage.get(self.config.namespace)
        except (OSError, ValueError) as e:
            logger.warning(
                "cache_load_failed",
                extra={"namespace": self.config.namespace, "error": str(e)},
            )
            return 0

        self._entries.clear()
        if not isinstance(blob, dict):
            return 0

        now_ms = self._now_ms()
        loaded: list[CacheEntry] = []
        for key, raw in blob.items():
            if not isinstance(raw, dict) or "expires_at" not in raw:
                continue
            entry = CacheEntry.from_dict(key, raw)
            if not entry.is_expired(now_ms):
                loaded.append(entry)

        loaded.sort(key=lambda e: e.last_accessed_ms)
        for entry in loaded[-self.config.max_size :]:
            self._entries[entry.key] = entry

        logger.info(
            "cache_loaded",
            extra={
                "namespace": self.config.namespace,
                "loaded": len(self._entries),
                "skipped": len(blob) - len(self._entries),
            },
        )
        return len(self._entries)

    def get_stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            sets=self._sets,
            size=len(self._entries),
            max_size=self.config.max_size,
            hit_rate=self._hits / total if total else 0.0,
        )

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sets = 0
