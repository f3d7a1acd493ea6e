import asyncio

import pytest

from stowage.cache.instance import CacheInstance
from stowage.cache.memory import LRUCacheBackend
from stowage.cache.registry import CacheConfig, CacheRegistry
from stowage.web.session import Session, SessionStore, new_session_id


@pytest.fixture
def session_store():
    cache = CacheInstance("session", LRUCacheBackend(capacity=100, sweep_interval=None))
    return SessionStore(cache)


async def _request(store, session_id, action):
    """One request: load, let the handler act, save on the way out."""
    async with store.session_scope(session_id) as session:
        result = action(session)
    return session.session_id, result


def _init(session):
    session["counter"] = 0
    return session["counter"]


def _view(session):
    return session.get("counter")


def _increment(session):
    session["counter"] += 1
    return session["counter"]


def _decrement(session):
    session["counter"] -= 1
    return session["counter"]


def _reset(session):
    session.clear()
    return None


class TestSession:
    def test_mutation_marks_modified(self):
        session = Session("sid", {"a": 1})
        assert not session.modified
        session["b"] = 2
        assert session.modified
        assert session.to_dict() == {"a": 1, "b": 2}

    def test_delete_and_clear_mark_modified(self):
        session = Session("sid", {"a": 1})
        del session["a"]
        assert session.modified
        session.modified = False
        session.clear()
        assert session.modified
        assert len(session) == 0

    def test_session_ids_are_unique(self):
        assert new_session_id() != new_session_id()


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_counter_flow(self, session_store):
        sid, value = await _request(session_store, None, _init)
        assert value == 0

        for expected in range(1, 11):
            sid, value = await _request(session_store, sid, _increment)
            assert value == expected
        assert (await _request(session_store, sid, _view))[1] == 10

        await _request(session_store, sid, _reset)
        assert (await _request(session_store, sid, _view))[1] is None

        await _request(session_store, sid, _init)
        for expected in range(-1, -11, -1):
            sid, value = await _request(session_store, sid, _decrement)
            assert value == expected
        assert (await _request(session_store, sid, _view))[1] == -10

    @pytest.mark.asyncio
    async def test_unmodified_new_session_is_not_saved(self, session_store):
        session = await session_store.load()
        assert session.is_new
        assert await session_store.save(session) is False
        assert [key async for key in session_store.cache.keys()] == []

    @pytest.mark.asyncio
    async def test_unknown_id_starts_fresh_session(self, session_store):
        session = await session_store.load("no-such-session")
        assert session.is_new
        assert session.session_id != "no-such-session"

    @pytest.mark.asyncio
    async def test_malformed_data_is_discarded(self, session_store):
        await session_store.cache.store("sid", "not a mapping")
        session = await session_store.load("sid")
        assert session.is_new
        assert len(session) == 0

    @pytest.mark.asyncio
    async def test_loaded_data_is_a_copy(self, session_store):
        async with session_store.session_scope() as session:
            session["items"] = ["a"]
        sid = session.session_id

        loaded = await session_store.load(sid)
        loaded["other"] = 1
        again = await session_store.load(sid)
        assert "other" not in again

    @pytest.mark.asyncio
    async def test_destroy(self, session_store):
        async with session_store.session_scope() as session:
            session["user"] = "ada"

        assert await session_store.destroy(session.session_id) is True
        assert await session_store.destroy(session.session_id) is False
        assert (await session_store.load(session.session_id)).is_new

    @pytest.mark.asyncio
    async def test_failed_request_is_not_saved(self, session_store):
        with pytest.raises(RuntimeError):
            async with session_store.session_scope() as session:
                session["half"] = "done"
                raise RuntimeError("handler failed")

        assert await session_store.cache.exists(session.session_id) is False

    @pytest.mark.asyncio
    async def test_session_ttl(self):
        cache = CacheInstance("session", LRUCacheBackend(capacity=10, sweep_interval=None))
        store = SessionStore(cache, ttl=0.05)
        async with store.session_scope() as session:
            session["user"] = "ada"

        await asyncio.sleep(0.1)
        assert (await store.load(session.session_id)).is_new

    @pytest.mark.asyncio
    async def test_from_registry(self):
        async with CacheRegistry(CacheConfig()) as registry:
            store = SessionStore.from_registry(registry, ttl=60)
            assert store.cache is registry.resolve("session")
            assert store.ttl == 60.0
