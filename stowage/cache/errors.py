"""Error kinds raised by the cache subsystem.

Cache misses and expired entries are not errors: fetch returns ``None``.
Everything below propagates unchanged through cache instances to callers.
"""

from __future__ import annotations

from typing import Optional


class CacheError(Exception):
    """Base class for cache subsystem failures."""

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        key: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.key = key

    def __str__(self) -> str:
        if self.backend:
            return f"[{self.backend}] {self.message}"
        return self.message


class ConfigurationError(CacheError):
    """Unknown cache name, early resolve, or malformed backend options."""


class BackendUnavailable(CacheError):
    """Backend storage cannot be opened, mapped, or reached."""

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        key: Optional[str] = None,
        path: Optional[str] = None,
    ):
        super().__init__(message, backend=backend, key=key)
        self.path = path


class OperationTimeout(CacheError):
    """Backend operation exceeded its time bound."""

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(message, backend=backend, key=key)
        self.timeout = timeout
