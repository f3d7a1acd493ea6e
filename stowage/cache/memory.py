"""In-process LRU cache backend."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator, List, Optional

from .base import CacheBackend, CacheStats, OptionsArg
from .entry import CacheEntry, StoreOptions, is_expired
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class LRUCacheBackend(CacheBackend):
    """Bounded in-memory cache with least-recently-used eviction.

    Capacity counts entries, not bytes. Every operation runs under one
    asyncio lock: eviction bookkeeping and the map are mutated together,
    and reads update recency. Suitable for single-process deployments.
    """

    backend_type = "lru"

    def __init__(self, capacity: int = 10000, sweep_interval: Optional[float] = 60.0):
        """Initialize LRU cache.

        Args:
            capacity: Maximum number of entries before LRU eviction
            sweep_interval: Seconds between expired-entry sweeps (None disables)
        """
        if capacity < 1:
            raise ConfigurationError("capacity must be at least 1", backend=self.backend_type)
        self._capacity = capacity
        self._sweep_interval = sweep_interval
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweep_task: Optional[asyncio.Task[None]] = None

    @property
    def capacity(self) -> int:
        return self._capacity

    async def initialize(self) -> None:
        """Start background sweep of expired entries."""
        logger.info(f"Initializing LRU cache (capacity: {self._capacity})")
        self._start_sweep_task()

    async def close(self) -> None:
        """Stop the sweep task and drop all entries."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        async with self._lock:
            self._cache.clear()
        logger.info("LRU cache closed")

    def _start_sweep_task(self) -> None:
        if not self._sweep_interval or self._sweep_task is not None:
            return
        try:
            asyncio.get_running_loop()
            self._sweep_task = asyncio.create_task(self._periodic_sweep())
        except RuntimeError:
            pass

    async def _periodic_sweep(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._sweep_interval)
                await self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in LRU cache sweep: {e}")

    async def sweep_expired(self) -> int:
        """Remove all expired entries."""
        async with self._lock:
            removed = self._drop_expired()
            if removed:
                logger.debug(f"Swept {removed} expired cache entries")
            return removed

    def _drop_expired(self) -> int:
        expired = [key for key, entry in self._cache.items() if is_expired(entry)]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def _evict_over_capacity(self, protected: str) -> None:
        """Evict LRU entries until size is within capacity. Caller holds the lock."""
        if len(self._cache) <= self._capacity:
            return

        self._drop_expired()

        while len(self._cache) > self._capacity:
            victim = next(
                (
                    key
                    for key, entry in self._cache.items()
                    if not entry.pinned and key != protected
                ),
                None,
            )
            if victim is None:
                logger.warning(
                    f"LRU cache over capacity ({len(self._cache)}/{self._capacity}): "
                    "all remaining entries are pinned"
                )
                return
            del self._cache[victim]
            self._evictions += 1
            logger.debug(f"Cache EVICT (LRU): {victim}")

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, removing it if expired. Caller holds the lock."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        if is_expired(entry):
            del self._cache[key]
            logger.debug(f"Cache EXPIRED: {key}")
            return None
        return entry

    async def store(self, key: str, value: Any, options: OptionsArg = None) -> Any:
        opts = StoreOptions.parse(options)
        async with self._lock:
            self._cache[key] = CacheEntry.create(value, ttl=opts.ttl, pinned=opts.pinned)
            self._cache.move_to_end(key)
            self._evict_over_capacity(protected=key)
        return value

    async def fetch(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return None

            self._cache.move_to_end(key)
            self._hits += 1
            return entry.value

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                entry = self._cache.pop(key, None)
                if entry is not None and not is_expired(entry):
                    removed += 1
            return removed

    async def clear(self, prefix: Optional[str] = None) -> int:
        async with self._lock:
            if prefix is None:
                count = len(self._cache)
                self._cache.clear()
            else:
                matching = [key for key in self._cache if key.startswith(prefix)]
                for key in matching:
                    del self._cache[key]
                count = len(matching)
        logger.info(f"LRU cache cleared {count} entries")
        return count

    async def keys(self, prefix: Optional[str] = None) -> AsyncIterator[str]:
        async with self._lock:
            snapshot: List[str] = [
                key
                for key, entry in self._cache.items()
                if not is_expired(entry) and (prefix is None or key.startswith(prefix))
            ]
        for key in snapshot:
            yield key

    async def get_stats(self, prefix: Optional[str] = None) -> CacheStats:
        if prefix is None:
            size = len(self._cache)
        else:
            size = sum(1 for key in self._cache if key.startswith(prefix))
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=size,
            max_size=self._capacity,
            evictions=self._evictions,
            backend_type=self.backend_type,
            connection_info="in-process",
        )

    async def increment(self, key: str, amount: int = 1, options: OptionsArg = None) -> int:
        """Atomic increment; keeps the entry's TTL and creation time.

        ``options`` apply only when the counter is created.
        """
        opts = StoreOptions.parse(options)
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                entry = CacheEntry.create(amount, ttl=opts.ttl, pinned=opts.pinned)
                self._cache[key] = entry
                self._evict_over_capacity(protected=key)
            else:
                entry.value = (entry.value or 0) + amount
            self._cache.move_to_end(key)
            return entry.value
