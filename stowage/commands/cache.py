"""Cache administration commands for the stowage CLI."""

import json
from typing import Optional

from ..cache.errors import CacheError
from ..cache.registry import CacheRegistry


async def list_keys(registry: CacheRegistry, name: str) -> int:
    """Print every live key of a named cache."""
    try:
        cache = registry.resolve(name)
        count = 0
        async for key in cache.keys():
            print(key)
            count += 1
        print(f"\n{count} keys in '{name}'")
        return 0
    except CacheError as e:
        print(f"❌ Failed to list keys: {e}")
        return 1


async def show_value(registry: CacheRegistry, name: str, key: str) -> int:
    """Print a cached value as JSON."""
    try:
        cache = registry.resolve(name)
        if not await cache.exists(key):
            print(f"'{key}' is not cached in '{name}'")
            return 1
        value = await cache.fetch(key)
        print(json.dumps(value, indent=2, default=str))
        return 0
    except CacheError as e:
        print(f"❌ Failed to read '{key}': {e}")
        return 1


async def clear_cache(registry: CacheRegistry, name: str) -> int:
    """Remove every entry of a named cache."""
    try:
        cleared = await registry.resolve(name).clear()
        print(f"✅ Cleared {cleared} entries from '{name}'")
        return 0
    except CacheError as e:
        print(f"❌ Failed to clear '{name}': {e}")
        return 1


async def show_stats(registry: CacheRegistry, name: Optional[str] = None) -> int:
    """Print statistics for one cache, or for all of them."""
    names = [name] if name else registry.names()
    status = 0
    for cache_name in names:
        try:
            stats = await registry.resolve(cache_name).get_stats()
        except CacheError as e:
            print(f"❌ {cache_name}: {e}")
            status = 1
            continue

        max_size = stats.max_size if stats.max_size >= 0 else "unbounded"
        print(f"📦 {cache_name} ({stats.backend_type})")
        print(f"  Entries: {stats.size} / {max_size}")
        print(f"  Hits: {stats.hits}  Misses: {stats.misses}  Evictions: {stats.evictions}")
        print(f"  Location: {stats.connection_info}")
    return status
