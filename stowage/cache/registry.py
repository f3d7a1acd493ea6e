"""Cache registry: builds named cache instances once and resolves them by name."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .base import CacheBackend
from .errors import ConfigurationError
from .instance import CacheInstance
from .memory import LRUCacheBackend
from .mmap_store import DEFAULT_REGION_DIR, PersistentLocalBackend

logger = logging.getLogger(__name__)

SESSION_CACHE = "session"


class BackendType(str, Enum):
    LRU = "lru"
    PERSISTENT_LOCAL = "persistent-local"
    DISTRIBUTED = "distributed"


class BackendOptions(BaseModel):
    """Construction options recognized by the backends."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    capacity: Optional[int] = Field(default=None, ge=1)
    path: Optional[str] = None
    remote_address: Optional[str] = None
    default_ttl: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    key_prefix: Optional[str] = None
    lock_timeout: Optional[float] = Field(default=None, gt=0)
    initial_size: Optional[int] = Field(default=None, ge=32)
    sweep_interval: Optional[float] = Field(default=None, gt=0)

    @field_validator("remote_address")
    @classmethod
    def _redis_scheme(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("remote_address must be a redis://, rediss:// or unix:// URL")
        return value


class BackendSpec(BaseModel):
    """Backend type plus its options."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    backend_type: BackendType = BackendType.LRU
    options: BackendOptions = Field(default_factory=BackendOptions)

    @model_validator(mode="after")
    def _required_options(self) -> "BackendSpec":
        if self.backend_type is BackendType.DISTRIBUTED and not self.options.remote_address:
            raise ValueError("distributed backend requires remote_address")
        return self


def _check_name(name: str) -> None:
    # Names become key prefixes and region file names
    if not name or name in {".", ".."} or any(ch in name for ch in ":/\\"):
        raise ValueError(f"invalid cache name {name!r}")


class CacheConfig(BaseModel):
    """Names of the caches to build and how to build them.

    Names without an entry in ``caches`` use the ``default`` backend. The
    session cache is always declared.
    """

    model_config = ConfigDict(extra="forbid")

    names: List[str] = Field(default_factory=list)
    default: BackendSpec = Field(default_factory=BackendSpec)
    caches: Dict[str, BackendSpec] = Field(default_factory=dict)

    @field_validator("names")
    @classmethod
    def _valid_names(cls, names: List[str]) -> List[str]:
        for name in names:
            _check_name(name)
        return names

    @field_validator("caches")
    @classmethod
    def _valid_cache_names(cls, caches: Dict[str, BackendSpec]) -> Dict[str, BackendSpec]:
        for name in caches:
            _check_name(name)
        return caches

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CacheConfig":
        """Validate raw configuration, raising ConfigurationError on malformed input."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid cache configuration: {exc}") from exc

    def declared_names(self) -> List[str]:
        ordered = dict.fromkeys([SESSION_CACHE, *self.names, *self.caches])
        return list(ordered)

    def spec_for(self, name: str) -> BackendSpec:
        return self.caches.get(name, self.default)


def build_backend(name: str, spec: BackendSpec) -> CacheBackend:
    """Construct the backend for a named cache."""
    options = spec.options

    if spec.backend_type is BackendType.LRU:
        return LRUCacheBackend(
            capacity=options.capacity or 10000,
            sweep_interval=options.sweep_interval or 60.0,
        )

    if spec.backend_type is BackendType.PERSISTENT_LOCAL:
        return PersistentLocalBackend(
            name,
            directory=options.path or DEFAULT_REGION_DIR,
            initial_size=options.initial_size or 64 * 1024,
            lock_timeout=options.lock_timeout or 10.0,
        )

    if spec.backend_type is BackendType.DISTRIBUTED:
        # Import here to keep redis off the import path of local-only deployments
        from .redis import RedisCacheBackend

        if not options.remote_address:
            raise ConfigurationError(
                f"Cache '{name}': distributed backend requires remote_address",
                backend=spec.backend_type.value,
            )
        return RedisCacheBackend(
            redis_url=options.remote_address,
            key_prefix=options.key_prefix if options.key_prefix is not None else "stowage:",
            timeout=options.timeout or 5.0,
        )

    raise ConfigurationError(f"Unknown backend type: {spec.backend_type}")


class CacheRegistry:
    """Maps cache names to cache instances for the lifetime of the process.

    Build it once at startup, ``await initialize()``, pass it to whoever needs
    a cache, and ``await close()`` at shutdown. Rewiring backends after
    traffic has started is unsupported.
    """

    def __init__(self, config: Optional[CacheConfig] = None):
        self._config = config or CacheConfig()
        self._instances: Dict[str, CacheInstance] = {}
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Build and initialize every declared cache instance."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            built: Dict[str, CacheInstance] = {}
            try:
                for name in self._config.declared_names():
                    spec = self._config.spec_for(name)
                    backend = build_backend(name, spec)
                    await backend.initialize()
                    built[name] = CacheInstance(
                        name, backend, default_ttl=spec.options.default_ttl
                    )
                    logger.debug(f"Cache '{name}' ready ({spec.backend_type.value})")
            except BaseException:
                for built_name, instance in built.items():
                    try:
                        await instance.close()
                    except Exception as e:
                        logger.error(f"Failed to close cache '{built_name}' after setup error: {e}")
                raise

            self._instances = built
            self._initialized = True

            logger.info(f"Cache registry initialized: {', '.join(built)}")

    async def close(self) -> None:
        """Tear down every instance and return to the uninitialized state."""
        async with self._lock:
            instances, self._instances = self._instances, {}
            self._initialized = False
            first_error: Optional[BaseException] = None
            for name, instance in instances.items():
                try:
                    await instance.close()
                except Exception as e:
                    logger.error(f"Failed to close cache '{name}': {e}")
                    if first_error is None:
                        first_error = e
            if first_error is not None:
                raise first_error

    def resolve(self, name: str) -> CacheInstance:
        """Return the instance registered under name."""
        if not self._initialized:
            raise ConfigurationError(f"Cache '{name}' requested before the registry was initialized")
        try:
            return self._instances[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown cache '{name}'. Declared caches: {', '.join(self._instances)}"
            ) from None

    def __getitem__(self, name: str) -> CacheInstance:
        return self.resolve(name)

    def __contains__(self, name: object) -> bool:
        return name in self._instances

    def names(self) -> List[str]:
        return list(self._instances)

    async def __aenter__(self) -> "CacheRegistry":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
