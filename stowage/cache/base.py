"""Base cache abstractions shared by every backend variant."""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional, Union

from .entry import StoreOptions

logger = logging.getLogger(__name__)

OptionsArg = Union[StoreOptions, Mapping[str, Any], None]


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int
    misses: int
    size: int
    max_size: int
    evictions: int
    backend_type: str
    connection_info: str


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    Backends store physical keys; namespacing is applied by the cache
    instance in front of them. Each backend serializes its own structural
    mutations.
    """

    backend_type: str = "abstract"

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire the backend's resources (region, connection, sweeper)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the backend's resources."""
        ...

    @abstractmethod
    async def store(self, key: str, value: Any, options: OptionsArg = None) -> Any:
        """Store a value, overwriting any existing entry.

        Args:
            key: Physical cache key
            value: Value to cache
            options: StoreOptions (or a mapping of them), e.g. ``{"ttl": 0.5}``

        Returns:
            The stored value
        """
        ...

    @abstractmethod
    async def fetch(self, key: str) -> Optional[Any]:
        """Get a value from the cache.

        Returns:
            Cached value, or None if absent or expired
        """
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether a live (non-expired) entry exists for key."""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete one or more keys in a single atomic step.

        Returns:
            Number of live entries removed
        """
        ...

    @abstractmethod
    async def clear(self, prefix: Optional[str] = None) -> int:
        """Remove entries whose key starts with prefix (all entries if None).

        Returns:
            Number of entries cleared
        """
        ...

    @abstractmethod
    def keys(self, prefix: Optional[str] = None) -> AsyncIterator[str]:
        """Iterate live keys, snapshotted when iteration starts."""
        ...

    @abstractmethod
    async def get_stats(self, prefix: Optional[str] = None) -> CacheStats:
        """Get cache statistics; ``size`` counts only keys under prefix when given."""
        ...

    # Convenience methods for common patterns

    async def get_or_store(
        self,
        key: str,
        factory: Any,
        options: OptionsArg = None,
    ) -> Any:
        """Get value from cache, or compute and cache it.

        Args:
            key: Physical cache key
            factory: Value, or a sync/async callable producing it
            options: Store options used when the value is computed

        Returns:
            Cached or computed value
        """
        value = await self.fetch(key)
        if value is not None:
            return value

        if callable(factory):
            if inspect.iscoroutinefunction(factory):
                value = await factory()
            else:
                value = factory()
        else:
            value = factory

        return await self.store(key, value, options)

    async def increment(self, key: str, amount: int = 1, options: OptionsArg = None) -> int:
        """Increment a counter value.

        ``options`` are used only when the counter is created. Not atomic
        across processes; backends override when they can do better.
        """
        current = await self.fetch(key)
        if current is None:
            return await self.store(key, amount, options)
        return await self.store(key, current + amount)
