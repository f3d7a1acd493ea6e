"""Cache subsystem for stowage.

Backends:
    lru:              in-process, bounded, least-recently-used eviction
    persistent-local: memory-mapped region file shared by processes on one host
    distributed:      Redis (redis://host:6379/0)

Calling code builds a CacheRegistry from a CacheConfig, initializes it once,
and resolves named CacheInstance objects from it.
"""

from .base import CacheBackend, CacheStats
from .entry import CacheEntry, StoreOptions, is_expired
from .errors import BackendUnavailable, CacheError, ConfigurationError, OperationTimeout
from .instance import CacheInstance
from .memory import LRUCacheBackend
from .mmap_store import PersistentLocalBackend
from .registry import (
    SESSION_CACHE,
    BackendOptions,
    BackendSpec,
    BackendType,
    CacheConfig,
    CacheRegistry,
    build_backend,
)

__all__ = [
    "CacheBackend",
    "CacheStats",
    "CacheEntry",
    "StoreOptions",
    "is_expired",
    "CacheError",
    "ConfigurationError",
    "BackendUnavailable",
    "OperationTimeout",
    "CacheInstance",
    "LRUCacheBackend",
    "PersistentLocalBackend",
    "SESSION_CACHE",
    "BackendOptions",
    "BackendSpec",
    "BackendType",
    "CacheConfig",
    "CacheRegistry",
    "build_backend",
]
