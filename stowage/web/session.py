"""Session lifecycle hooks for web frontends.

A web framework calls ``load`` when a request starts and ``save`` when the
response ends; in between the handler reads and writes the session like a
dict. Sessions live in the "session" cache instance.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterator, MutableMapping, Optional

from ..cache.entry import TTLValue, coerce_ttl
from ..cache.instance import CacheInstance
from ..cache.registry import SESSION_CACHE, CacheRegistry

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


class Session(MutableMapping[str, Any]):
    """Request-scoped view of one session's data."""

    def __init__(self, session_id: str, data: Optional[Dict[str, Any]] = None, is_new: bool = False):
        self.session_id = session_id
        self.is_new = is_new
        self.modified = False
        self._data: Dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        self.modified = True

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self.modified = True

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, data={self._data!r})"

    def clear(self) -> None:
        self._data.clear()
        self.modified = True

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


class SessionStore:
    """Loads and persists sessions through a cache instance."""

    def __init__(self, cache: CacheInstance, ttl: TTLValue = None):
        self.cache = cache
        self.ttl = coerce_ttl(ttl)

    @classmethod
    def from_registry(cls, registry: CacheRegistry, ttl: TTLValue = None) -> "SessionStore":
        return cls(registry.resolve(SESSION_CACHE), ttl=ttl)

    async def load(self, session_id: Optional[str] = None) -> Session:
        """Resolve the session for a request, creating a fresh one if needed."""
        if session_id:
            data = await self.cache.fetch(session_id)
            if isinstance(data, dict):
                return Session(session_id, data)
            if data is not None:
                logger.warning(f"Discarding malformed session data for {session_id}")

        return Session(new_session_id(), is_new=True)

    async def save(self, session: Session) -> bool:
        """Persist the session if the request changed it.

        Returns:
            True when the session was written
        """
        if not session.modified:
            return False

        await self.cache.store(session.session_id, session.to_dict(), ttl=self.ttl)
        session.modified = False
        session.is_new = False
        return True

    async def destroy(self, session_id: str) -> bool:
        return await self.cache.delete(session_id) > 0

    @asynccontextmanager
    async def session_scope(self, session_id: Optional[str] = None) -> AsyncIterator[Session]:
        """Load a session for the duration of a request and save it on success."""
        session = await self.load(session_id)
        yield session
        await self.save(session)
