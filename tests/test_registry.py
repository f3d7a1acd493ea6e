from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from stowage.cache.errors import BackendUnavailable, ConfigurationError
from stowage.cache.memory import LRUCacheBackend
from stowage.cache.mmap_store import PersistentLocalBackend
from stowage.cache.registry import (
    SESSION_CACHE,
    BackendType,
    CacheConfig,
    CacheRegistry,
    build_backend,
)


def _config(**data):
    return CacheConfig.from_mapping(data)


class TestCacheConfig:
    def test_session_is_always_declared(self):
        config = _config(names=["one", "two"])
        assert config.declared_names() == [SESSION_CACHE, "one", "two"]

    def test_names_from_overrides_are_declared(self):
        config = _config(names=["one"], caches={"three": {"backend_type": "lru"}})
        assert config.declared_names() == [SESSION_CACHE, "one", "three"]

    def test_duplicates_collapse(self):
        config = _config(names=["one", "session", "one"])
        assert config.declared_names() == [SESSION_CACHE, "one"]

    def test_default_backend_fallback(self):
        config = _config(
            names=["one", "two"],
            default={"backend_type": "lru", "options": {"capacity": 5}},
            caches={"two": {"backend_type": "persistent-local", "options": {"path": "/tmp/x"}}},
        )
        assert config.spec_for("one").backend_type is BackendType.LRU
        assert config.spec_for("one").options.capacity == 5
        assert config.spec_for("two").backend_type is BackendType.PERSISTENT_LOCAL

    @pytest.mark.parametrize("name", ["", "a:b", "a/b"])
    def test_invalid_names(self, name):
        with pytest.raises(ConfigurationError):
            _config(names=[name])

    @pytest.mark.parametrize("name", ["a:b", "../escaped", "..", "a/b", ""])
    def test_invalid_override_names(self, name):
        with pytest.raises(ConfigurationError, match="invalid cache name"):
            _config(names=["a"], caches={name: {}})

    def test_override_name_cannot_escape_region_directory(self, tmp_path):
        regions = tmp_path / "regions"
        with pytest.raises(ConfigurationError):
            _config(
                caches={
                    "../escaped": {
                        "backend_type": "persistent-local",
                        "options": {"path": str(regions)},
                    }
                }
            )
        assert list(tmp_path.iterdir()) == []

    def test_unknown_backend_type(self):
        with pytest.raises(ConfigurationError, match="backend_type"):
            _config(default={"backend_type": "memcached"})

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError, match="colour"):
            _config(default={"options": {"colour": "blue"}})

    def test_non_numeric_capacity(self):
        with pytest.raises(ConfigurationError):
            _config(default={"options": {"capacity": "lots"}})

    def test_zero_capacity(self):
        with pytest.raises(ConfigurationError):
            _config(default={"options": {"capacity": 0}})

    def test_distributed_requires_remote_address(self):
        with pytest.raises(ConfigurationError, match="remote_address"):
            _config(default={"backend_type": "distributed"})

    def test_remote_address_must_be_redis_url(self):
        with pytest.raises(ConfigurationError):
            _config(
                default={
                    "backend_type": "distributed",
                    "options": {"remote_address": "http://cache:6379"},
                }
            )


class TestBuildBackend:
    def test_lru(self):
        backend = build_backend("one", _config(default={"options": {"capacity": 7}}).default)
        assert isinstance(backend, LRUCacheBackend)
        assert backend.capacity == 7

    def test_persistent_local(self, tmp_path):
        spec = _config(
            default={"backend_type": "persistent-local", "options": {"path": str(tmp_path)}}
        ).default
        backend = build_backend("one", spec)
        assert isinstance(backend, PersistentLocalBackend)
        assert backend.path == tmp_path / "one.region"

    def test_distributed(self):
        from stowage.cache.redis import RedisCacheBackend

        spec = _config(
            default={
                "backend_type": "distributed",
                "options": {"remote_address": "redis://cache:6379/1", "key_prefix": "app:"},
            }
        ).default
        backend = build_backend("one", spec)
        assert isinstance(backend, RedisCacheBackend)
        assert backend.backend_type == "distributed"


class TestCacheRegistry:
    @pytest.mark.asyncio
    async def test_resolve_before_initialize(self):
        registry = CacheRegistry(_config(names=["one"]))
        with pytest.raises(ConfigurationError, match="before the registry was initialized"):
            registry.resolve("one")

    @pytest.mark.asyncio
    async def test_resolve_unknown_name(self):
        async with CacheRegistry(_config(names=["one"])) as registry:
            with pytest.raises(ConfigurationError, match="Unknown cache 'nope'"):
                registry.resolve("nope")

    @pytest.mark.asyncio
    async def test_instances_are_stable(self):
        async with CacheRegistry(_config(names=["one"])) as registry:
            assert registry.resolve("one") is registry["one"]
            assert registry.resolve(SESSION_CACHE).name == SESSION_CACHE
            assert "one" in registry
            assert registry.names() == [SESSION_CACHE, "one"]

    @pytest.mark.asyncio
    async def test_each_name_gets_its_own_backend(self):
        async with CacheRegistry(_config(names=["one", "two"])) as registry:
            one = registry.resolve("one")
            two = registry.resolve("two")
            assert one.backend is not two.backend
            await one.store("k", 1)
            assert await two.fetch("k") is None

    @pytest.mark.asyncio
    async def test_overrides_apply(self, tmp_path):
        config = _config(
            names=["one", "two"],
            default={"options": {"capacity": 50, "default_ttl": 30}},
            caches={
                "two": {"backend_type": "persistent-local", "options": {"path": str(tmp_path)}}
            },
        )
        async with CacheRegistry(config) as registry:
            one = registry.resolve("one")
            assert one.backend.backend_type == "lru"
            assert one.default_ttl == 30.0
            assert registry.resolve("two").backend.backend_type == "persistent-local"
            await registry.resolve("two").store("k", "v")

        assert (tmp_path / "two.region").exists()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self):
        registry = CacheRegistry(_config(names=["one"]))
        await registry.initialize()
        first = registry.resolve("one")
        await registry.initialize()
        assert registry.resolve("one") is first
        await registry.close()

    @pytest.mark.asyncio
    async def test_close_returns_to_uninitialized(self):
        registry = CacheRegistry()
        await registry.initialize()
        assert registry.initialized
        await registry.close()
        assert not registry.initialized
        with pytest.raises(ConfigurationError):
            registry.resolve(SESSION_CACHE)

    @pytest.mark.asyncio
    async def test_failed_initialize_releases_built_instances(self):
        config = _config(
            names=["one", "remote"],
            caches={
                "remote": {
                    "backend_type": "distributed",
                    "options": {"remote_address": "redis://unreachable:6379/0"},
                }
            },
        )
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("Connection refused")
        registry = CacheRegistry(config)

        closed = []
        original_close = LRUCacheBackend.close

        async def tracking_close(self):
            closed.append(self)
            await original_close(self)

        with patch("stowage.cache.redis.aioredis.from_url", return_value=client):
            with patch.object(LRUCacheBackend, "close", tracking_close):
                with pytest.raises(BackendUnavailable):
                    await registry.initialize()

        assert len(closed) == 2
        assert all(backend._sweep_task is None for backend in closed)
        assert not registry.initialized

    @pytest.mark.asyncio
    async def test_close_releases_every_instance_when_one_fails(self):
        registry = CacheRegistry(_config(names=["one", "two"]))
        await registry.initialize()

        closed = []
        original_close = LRUCacheBackend.close

        async def failing_first_close(self):
            closed.append(self)
            if len(closed) == 1:
                raise BackendUnavailable("close failed", backend="lru")
            await original_close(self)

        with patch.object(LRUCacheBackend, "close", failing_first_close):
            with pytest.raises(BackendUnavailable, match="close failed"):
                await registry.close()

        assert len(closed) == 3
        assert all(backend._sweep_task is None for backend in closed[1:])
        assert not registry.initialized
        await original_close(closed[0])
