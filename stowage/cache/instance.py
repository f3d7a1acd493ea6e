"""Named cache instances: one backend bound to one key namespace."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Hashable, Optional

from .base import CacheBackend, CacheStats
from .entry import StoreOptions, TTLValue, coerce_ttl

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = ":"


class CacheInstance:
    """Facade that scopes every key of a backend to the instance name.

    Two instances with different names never see each other's keys, even
    when they share a backend, because every physical key is prefixed with
    ``"<name>:"``. Backend errors propagate unchanged.
    """

    def __init__(self, name: str, backend: CacheBackend, default_ttl: TTLValue = None):
        self.name = name
        self.backend = backend
        self.default_ttl = coerce_ttl(default_ttl)
        self._prefix = f"{name}{NAMESPACE_SEPARATOR}"

    def __repr__(self) -> str:
        return f"CacheInstance(name={self.name!r}, backend={self.backend.backend_type!r})"

    @property
    def prefix(self) -> str:
        return self._prefix

    def physical_key(self, key: Hashable) -> str:
        return f"{self._prefix}{key}"

    def _options(self, ttl: TTLValue, options: dict) -> StoreOptions:
        if ttl is None:
            ttl = self.default_ttl
        if ttl is not None:
            options = {**options, "ttl": ttl}
        return StoreOptions.parse(options)

    async def store(self, key: Hashable, value: Any, ttl: TTLValue = None, **options: Any) -> Any:
        """Store value under key and return it.

        Args:
            key: Logical key (converted with str())
            value: Value to cache
            ttl: Seconds or timedelta; falls back to the instance default TTL
            **options: Further StoreOptions, e.g. ``pinned=True``
        """
        return await self.backend.store(self.physical_key(key), value, self._options(ttl, options))

    set = store

    async def fetch(self, key: Hashable, default: Any = None) -> Any:
        """Return the cached value, or default when absent or expired."""
        value = await self.backend.fetch(self.physical_key(key))
        return default if value is None else value

    get = fetch

    async def exists(self, key: Hashable) -> bool:
        return await self.backend.exists(self.physical_key(key))

    async def delete(self, *keys: Hashable) -> int:
        """Delete all given keys in one backend call."""
        return await self.backend.delete(*(self.physical_key(key) for key in keys))

    async def clear(self) -> int:
        """Remove every entry of this instance and nothing else."""
        count = await self.backend.clear(prefix=self._prefix)
        logger.debug(f"Cache '{self.name}' cleared ({count} entries)")
        return count

    async def keys(self) -> AsyncIterator[str]:
        """Iterate the logical keys currently live in this instance."""
        offset = len(self._prefix)
        async for key in self.backend.keys(prefix=self._prefix):
            yield key[offset:]

    async def get_or_store(self, key: Hashable, factory: Any, ttl: TTLValue = None) -> Any:
        return await self.backend.get_or_store(
            self.physical_key(key), factory, self._options(ttl, {})
        )

    async def increment(self, key: Hashable, amount: int = 1, ttl: TTLValue = None) -> int:
        """Add amount to a counter; a new counter gets ttl or the default TTL."""
        return await self.backend.increment(
            self.physical_key(key), amount, self._options(ttl, {})
        )

    async def get_stats(self) -> CacheStats:
        """Backend statistics with ``size`` limited to this instance's keys."""
        return await self.backend.get_stats(prefix=self._prefix)

    async def close(self) -> None:
        await self.backend.close()
