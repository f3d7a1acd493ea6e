"""Cache entries and TTL bookkeeping shared by every backend."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ConfigurationError

TTLValue = Union[int, float, timedelta, None]


def coerce_ttl(value: TTLValue) -> Optional[float]:
    """Convert a TTL given as seconds or ``timedelta`` into float seconds."""
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, bool):
        raise TypeError("ttl must be a number of seconds or a timedelta")
    if isinstance(value, (int, float)):
        return float(value)
    raise TypeError(f"ttl must be a number of seconds or a timedelta, got {type(value).__name__}")


@dataclass
class CacheEntry:
    """Single cached value with its creation time and optional expiry."""

    value: Any
    created_at: float
    ttl: Optional[float] = None
    pinned: bool = False

    @classmethod
    def create(cls, value: Any, ttl: Optional[float] = None, pinned: bool = False) -> "CacheEntry":
        return cls(value=value, created_at=time.time(), ttl=ttl, pinned=pinned)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return is_expired(self, now)

    def remaining_ttl(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds left before expiry, or None for entries without a TTL."""
        if self.ttl is None:
            return None
        if now is None:
            now = time.time()
        return max(0.0, self.created_at + self.ttl - now)


def is_expired(entry: CacheEntry, now: Optional[float] = None) -> bool:
    """Return True when the entry has outlived its TTL.

    An entry without a TTL never expires by time. Backends call this on
    every read path before handing a value back.
    """
    if entry.ttl is None:
        return False
    if now is None:
        now = time.time()
    return now - entry.created_at >= entry.ttl


class StoreOptions(BaseModel):
    """Options recognized by ``store``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ttl: Optional[float] = None
    pinned: bool = False

    @field_validator("ttl", mode="before")
    @classmethod
    def _convert_ttl(cls, value: Any) -> Optional[float]:
        try:
            return coerce_ttl(value)
        except TypeError as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("ttl")
    @classmethod
    def _positive_ttl(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("ttl must be greater than zero")
        return value

    @classmethod
    def parse(cls, options: Union["StoreOptions", Mapping[str, Any], None]) -> "StoreOptions":
        """Validate caller-supplied options, raising ConfigurationError on bad input."""
        if options is None:
            return _DEFAULT_OPTIONS
        if isinstance(options, StoreOptions):
            return options
        try:
            return cls(**dict(options))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid store options {dict(options)!r}: {exc}") from exc


_DEFAULT_OPTIONS = StoreOptions()
