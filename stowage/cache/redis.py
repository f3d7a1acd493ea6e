"""Redis cache backend for distributed deployments."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Awaitable, List, Optional, TypeVar

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .base import CacheBackend, CacheStats, OptionsArg
from .entry import StoreOptions
from .errors import BackendUnavailable, OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def sanitize_url(url: str) -> str:
    """Remove password from URL for logging."""
    return re.sub(r":([^:@/]+)@", r":***@", url)


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache; the server is the only copy of the data.

    Features:
    - Native TTL (``SET ... PX``), no local expiry bookkeeping
    - Multi-key delete in one ``DEL`` command
    - Every round trip bounded by ``timeout``
    """

    backend_type = "distributed"

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "stowage:",
        timeout: float = 5.0,
        scan_count: int = 500,
        client: Optional[Redis] = None,
    ):
        """Initialize Redis cache.

        Args:
            redis_url: Redis connection URL (redis://host:port/db)
            key_prefix: Prefix added to every key stored by this backend
            timeout: Seconds allowed for each command
            scan_count: Batch size hint for SCAN
            client: Pre-built client (skips from_url)
        """
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._timeout = timeout
        self._scan_count = scan_count
        self._redis: Optional[Redis] = client
        self._owns_client = client is None
        self._hits = 0
        self._misses = 0

    def _make_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _strip_key(self, key: str) -> str:
        return key[len(self._key_prefix):]

    @property
    def _client(self) -> Redis:
        if self._redis is None:
            raise BackendUnavailable("Redis not initialized", backend=self.backend_type)
        return self._redis

    async def _run(self, command: str, awaitable: Awaitable[T], key: Optional[str] = None) -> T:
        """Await a Redis command under the timeout, mapping failures to cache errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as exc:
            raise OperationTimeout(
                f"{command} timed out after {self._timeout}s",
                backend=self.backend_type,
                key=key,
                timeout=self._timeout,
            ) from exc
        except RedisConnectionError as exc:
            raise BackendUnavailable(
                f"{command} failed, Redis unreachable at {sanitize_url(self._redis_url)}: {exc}",
                backend=self.backend_type,
                key=key,
            ) from exc
        except RedisError as exc:
            raise BackendUnavailable(
                f"{command} failed: {exc}", backend=self.backend_type, key=key
            ) from exc

    async def initialize(self) -> None:
        """Connect to Redis and verify the connection."""
        logger.info(f"Connecting to Redis: {sanitize_url(self._redis_url)}")

        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self._timeout,
                socket_timeout=self._timeout,
                socket_keepalive=True,
                health_check_interval=30,
            )

        await self._run("PING", self._client.ping())
        logger.info("Redis connection established")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            if self._owns_client:
                await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed")

    def _serialize(self, value: Any) -> str:
        return json.dumps(value)

    def _deserialize(self, data: str) -> Any:
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return data

    async def store(self, key: str, value: Any, options: OptionsArg = None) -> Any:
        opts = StoreOptions.parse(options)
        px = max(1, int(opts.ttl * 1000)) if opts.ttl is not None else None
        await self._run(
            "SET",
            self._client.set(self._make_key(key), self._serialize(value), px=px),
            key=key,
        )
        return value

    async def fetch(self, key: str) -> Optional[Any]:
        data = await self._run("GET", self._client.get(self._make_key(key)), key=key)
        if data is None:
            self._misses += 1
            return None

        self._hits += 1
        return self._deserialize(data)

    async def exists(self, key: str) -> bool:
        count = await self._run("EXISTS", self._client.exists(self._make_key(key)), key=key)
        return count > 0

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        physical = [self._make_key(key) for key in keys]
        return await self._run("DEL", self._client.delete(*physical))

    def _match_pattern(self, prefix: Optional[str]) -> str:
        escaped = _GLOB_SPECIAL.sub(r"\\\1", self._make_key(prefix or ""))
        return f"{escaped}*"

    async def _scan(self, prefix: Optional[str]) -> AsyncIterator[List[str]]:
        """Yield batches of physical keys matching prefix, one SCAN round trip each."""
        match = self._match_pattern(prefix)
        cursor = 0
        while True:
            cursor, batch = await self._run(
                "SCAN", self._client.scan(cursor=cursor, match=match, count=self._scan_count)
            )
            if batch:
                yield list(batch)
            if cursor == 0:
                break

    async def clear(self, prefix: Optional[str] = None) -> int:
        """Delete keys under prefix using SCAN; never flushes the database."""
        count = 0
        async for batch in self._scan(prefix):
            count += await self._run("DEL", self._client.delete(*batch))
        logger.info(f"Redis cache cleared {count} entries under {self._match_pattern(prefix)}")
        return count

    async def keys(self, prefix: Optional[str] = None) -> AsyncIterator[str]:
        # SCAN may return a key more than once
        seen = set()
        async for batch in self._scan(prefix):
            for key in batch:
                if key in seen:
                    continue
                seen.add(key)
                yield self._strip_key(key)

    async def get_stats(self, prefix: Optional[str] = None) -> CacheStats:
        """Statistics; size counts distinct keys under prefix on the server."""
        size = 0
        if self._redis is not None:
            seen = set()
            async for batch in self._scan(prefix):
                seen.update(batch)
            size = len(seen)

        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=size,
            max_size=-1,
            evictions=0,
            backend_type=self.backend_type,
            connection_info=sanitize_url(self._redis_url),
        )

    async def increment(self, key: str, amount: int = 1, options: OptionsArg = None) -> int:
        """Atomic increment using Redis INCRBY.

        A ttl in options applies only when the counter is created.
        """
        opts = StoreOptions.parse(options)
        redis_key = self._make_key(key)
        if opts.ttl is not None:
            # SET NX creates the counter with its TTL; INCRBY keeps an existing TTL
            await self._run(
                "SET",
                self._client.set(redis_key, 0, nx=True, px=max(1, int(opts.ttl * 1000))),
                key=key,
            )
        return await self._run("INCRBY", self._client.incrby(redis_key, amount), key=key)

    async def expire(self, key: str, ttl: float) -> bool:
        """Set/update TTL on a key."""
        return await self._run(
            "PEXPIRE", self._client.pexpire(self._make_key(key), max(1, int(ttl * 1000))), key=key
        )
