import time
from datetime import timedelta

import pytest

from stowage.cache.entry import CacheEntry, StoreOptions, coerce_ttl, is_expired
from stowage.cache.errors import ConfigurationError


class TestIsExpired:
    def test_entry_without_ttl_never_expires(self):
        entry = CacheEntry(value="v", created_at=0.0)
        assert is_expired(entry, now=10**12) is False

    def test_expired_exactly_at_ttl_boundary(self):
        entry = CacheEntry(value="v", created_at=100.0, ttl=5.0)
        assert is_expired(entry, now=104.999) is False
        assert is_expired(entry, now=105.0) is True
        assert is_expired(entry, now=200.0) is True

    def test_defaults_to_current_time(self):
        fresh = CacheEntry.create("v", ttl=60)
        stale = CacheEntry(value="v", created_at=time.time() - 120, ttl=60)
        assert fresh.is_expired() is False
        assert stale.is_expired() is True

    def test_remaining_ttl(self):
        entry = CacheEntry(value="v", created_at=100.0, ttl=10.0)
        assert entry.remaining_ttl(now=104.0) == pytest.approx(6.0)
        assert entry.remaining_ttl(now=500.0) == 0.0
        assert CacheEntry(value="v", created_at=100.0).remaining_ttl() is None


class TestStoreOptions:
    def test_none_gives_defaults(self):
        opts = StoreOptions.parse(None)
        assert opts.ttl is None
        assert opts.pinned is False

    def test_timedelta_ttl_is_converted(self):
        opts = StoreOptions.parse({"ttl": timedelta(minutes=2)})
        assert opts.ttl == 120.0

    def test_fractional_ttl(self):
        assert StoreOptions.parse({"ttl": 0.2}).ttl == pytest.approx(0.2)

    @pytest.mark.parametrize("ttl", [0, -1, "soon"])
    def test_invalid_ttl_rejected(self, ttl):
        with pytest.raises(ConfigurationError):
            StoreOptions.parse({"ttl": ttl})

    def test_unknown_option_rejected(self):
        with pytest.raises(ConfigurationError, match="expires"):
            StoreOptions.parse({"expires": 10})

    def test_options_instance_passes_through(self):
        opts = StoreOptions(ttl=3, pinned=True)
        assert StoreOptions.parse(opts) is opts


def test_coerce_ttl():
    assert coerce_ttl(None) is None
    assert coerce_ttl(3) == 3.0
    assert coerce_ttl(timedelta(seconds=1.5)) == 1.5
    with pytest.raises(TypeError):
        coerce_ttl(True)
