"""
Tests for cache.py
Tests MemoryCache, RedisCache, MultiTierCache and the per-height repositories
"""

import os
import time
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

import pytest
import redis

from cache import (
    BlockTimesRepo,
    CacheEntry,
    MemoryCache,
    MultiTierCache,
    RedisCache,
    RelayRatesRepo,
    build_cache,
)
from errors import CacheError


def _offline_redis(**kwargs) -> RedisCache:
    """RedisCache whose connection attempt fails immediately"""
    with patch("cache.redis.from_url", side_effect=redis.ConnectionError("connection refused")):
        return RedisCache(redis_url="redis://offline:6379/0", **kwargs)


class TestCacheEntry:
    """Tests for cache entry expiry"""

    def test_entry_without_ttl_never_expires(self):
        entry = CacheEntry(key="k", value="v", timestamp=0.0, ttl=None)
        assert entry.expired(time.time()) is False

    def test_entry_with_ttl_expires(self):
        entry = CacheEntry(key="k", value="v", timestamp=100.0, ttl=10)
        assert entry.expired(105.0) is False
        assert entry.expired(111.0) is True


class TestMemoryCache:
    """Tests for in-memory LRU cache"""

    def test_basic_operations(self):
        """Test set, get, delete operations"""
        cache = MemoryCache(max_size=10)

        cache.set("key1", "value1", ttl=60)
        assert cache.get("key1") == "value1"

        assert cache.get("nonexistent") is None

        cache.delete("key1")
        assert cache.get("key1") is None

    def test_ttl_expiration(self):
        """Test that entries expire after TTL"""
        cache = MemoryCache(max_size=10)
        cache.set("key1", "value1", ttl=1)

        assert cache.get("key1") == "value1"

        time.sleep(1.1)
        assert cache.get("key1") is None

    def test_no_ttl_is_permanent(self):
        """Entries written without a TTL survive past the default expiry"""
        cache = MemoryCache(max_size=10)
        cache.set("key1", "value1", ttl=None)

        with patch("cache.time.time", return_value=time.time() + 10 ** 7):
            assert cache.get("key1") == "value1"

    def test_lru_eviction(self):
        """Test LRU eviction when at capacity"""
        cache = MemoryCache(max_size=3)

        cache.set("key1", "value1")
        cache.set("key2", "value2")
        cache.set("key3", "value3")

        # Access key1 to make it recently used
        cache.get("key1")

        # Add key4, should evict key2 (least recently used)
        cache.set("key4", "value4")

        assert cache.get("key1") == "value1"
        assert cache.get("key2") is None
        assert cache.get("key3") == "value3"
        assert cache.get("key4") == "value4"

    def test_overwrite_does_not_evict(self):
        cache = MemoryCache(max_size=2)
        cache.set("key1", "value1")
        cache.set("key2", "value2")
        cache.set("key1", "updated")

        assert cache.get("key1") == "updated"
        assert cache.get("key2") == "value2"

    def test_clear(self):
        """Test clearing all cache entries"""
        cache = MemoryCache(max_size=10)
        cache.set("key1", "value1")
        cache.set("key2", "value2")

        cache.clear()

        assert cache.get("key1") is None
        assert cache.get("key2") is None
        assert len(cache.cache) == 0

    def test_stats(self):
        """Test cache statistics"""
        cache = MemoryCache(max_size=2)
        cache.set("key1", "value1")
        cache.set("key2", "value2", ttl=None)

        cache.get("key1")
        cache.get("key1")
        cache.get("key1")

        stats = cache.get_stats()
        assert stats["size"] == 2
        assert stats["max_size"] == 2
        assert stats["total_hits"] == 3
        assert stats["permanent"] == 1
        assert stats["evictions"] == 0

        cache.set("key3", "value3")
        assert cache.get_stats()["evictions"] == 1


class TestRedisCache:
    """Tests for Redis cache with fallback"""

    def test_fallback_when_redis_unavailable(self):
        """Test that cache falls back to MemoryCache when Redis is unavailable"""
        cache = _offline_redis()

        assert cache.fallback_mode is True
        assert cache.enabled is False

        cache.set("key1", "value1")
        assert cache.get("key1") == "value1"

        cache.delete("key1")
        assert cache.get("key1") is None

    def test_environment_variable_redis_url(self):
        """Test that REDIS_URL environment variable is used"""
        test_url = "redis://testhost:6379/1"
        with patch.dict(os.environ, {"REDIS_URL": test_url}):
            with patch("cache.redis.from_url", side_effect=redis.ConnectionError("down")):
                cache = RedisCache()
        assert cache.redis_url == test_url

    def test_key_prefix(self):
        """Test that key prefix is applied"""
        cache = _offline_redis(key_prefix="test:")
        assert cache._get_key("mykey") == "test:mykey"

    def test_connected_client(self):
        """Values are JSON encoded and written with the requested expiry"""
        client = MagicMock()
        client.get.return_value = '"2023-01-01T00:00:00+00:00"'
        with patch("cache.redis.from_url", return_value=client):
            cache = RedisCache(redis_url="redis://localhost:6379/15", key_prefix="pokt:")

        assert cache.enabled is True
        assert cache.fallback_mode is False

        cache.set("rate", "0.0089", ttl=600)
        client.setex.assert_called_once_with("pokt:rate", 600, '"0.0089"')

        cache.set("block_time:1", "2023-01-01T00:00:00+00:00", ttl=None)
        client.set.assert_called_once_with("pokt:block_time:1", '"2023-01-01T00:00:00+00:00"')

        assert cache.get("block_time:1") == "2023-01-01T00:00:00+00:00"
        client.get.assert_called_with("pokt:block_time:1")

    def test_undecodable_value_is_dropped(self):
        client = MagicMock()
        client.get.return_value = "{not json"
        with patch("cache.redis.from_url", return_value=client):
            cache = RedisCache(redis_url="redis://localhost:6379/15", key_prefix="pokt:")

        assert cache.get("rate") is None
        client.delete.assert_called_once_with("pokt:rate")

    def test_clear_only_touches_prefix(self):
        client = MagicMock()
        client.scan_iter.return_value = iter(["pokt:a", "pokt:b"])
        with patch("cache.redis.from_url", return_value=client):
            cache = RedisCache(redis_url="redis://localhost:6379/15", key_prefix="pokt:")

        cache.clear()

        client.scan_iter.assert_called_once_with(match="pokt:*", count=500)
        client.delete.assert_called_once_with("pokt:a", "pokt:b")

    def test_runtime_error_switches_to_fallback(self):
        client = MagicMock()
        with patch("cache.redis.from_url", return_value=client):
            cache = RedisCache(redis_url="redis://localhost:6379/15")

        client.setex.side_effect = redis.ConnectionError("gone")
        cache.set("key1", "value1", ttl=60)

        assert cache.fallback_mode is True
        assert cache.get("key1") == "value1"

    def test_json_serialization_error_propagates(self):
        """Non-serializable values fail loudly and never reach Redis"""
        cache = _offline_redis()
        cache.enabled = True
        cache.fallback_mode = False
        cache.client = MagicMock()

        class NonSerializable:
            pass

        with pytest.raises(TypeError):
            cache.set("key1", NonSerializable())

        cache.client.setex.assert_not_called()

    def test_stats_in_fallback_mode(self):
        """Test stats when in fallback mode"""
        cache = _offline_redis()
        cache.fallback_cache.set("key1", "value1")

        stats = cache.get_stats()
        assert stats["mode"] == "fallback"
        assert stats["size"] == 1


class TestMultiTierCache:
    """Tests for multi-tier cache"""

    def test_l1_hit(self):
        """Test that L1 cache is checked first"""
        l1 = MemoryCache(max_size=10)
        cache = MultiTierCache(memory_cache=l1, redis_cache=_offline_redis())

        cache.set("key1", "value1")

        assert cache.get("key1") == "value1"
        assert cache.stats["l1_hits"] == 1
        assert cache.stats["l2_hits"] == 0

    def test_l2_hit_and_promotion(self):
        """Test L2 hit and promotion to L1"""
        l1 = MemoryCache(max_size=10)
        l2 = _offline_redis()
        cache = MultiTierCache(memory_cache=l1, redis_cache=l2, promote_ttl=30)

        l2.set("key1", "value1")

        assert cache.get("key1") == "value1"
        assert cache.stats["l2_hits"] == 1

        assert l1.get("key1") == "value1"
        assert l1.cache["key1"].ttl == 30

    def test_cache_miss(self):
        """Test cache miss tracking"""
        cache = MultiTierCache()

        assert cache.get("nonexistent") is None
        assert cache.stats["misses"] == 1

    def test_set_both_tiers(self):
        """Test that set writes to both tiers"""
        l1 = MemoryCache(max_size=10)
        l2 = _offline_redis()
        cache = MultiTierCache(memory_cache=l1, redis_cache=l2)

        cache.set("key1", "value1")

        assert l1.get("key1") == "value1"
        assert l2.get("key1") == "value1"

    def test_delete_and_clear(self):
        cache = MultiTierCache()
        cache.set("key1", "value1")
        cache.set("key2", "value2")
        cache.delete("key1")

        assert cache.get("key1") is None

        cache.clear()
        assert cache.get("key2") is None

    def test_stats(self):
        """Test cache statistics"""
        cache = MultiTierCache()

        cache.set("key1", "value1")
        cache.get("key1")
        cache.get("key1")
        cache.get("nonexistent")

        stats = cache.get_stats()
        assert stats["hits"]["l1"] == 2
        assert stats["misses"] == 1
        assert stats["hits"]["total"] == 2
        assert stats["hit_rate"] > 0


class TestBuildCache:
    """Tests for cache wiring"""

    def test_memory_only_without_redis_url(self):
        cache = build_cache(redis_url="", max_size=50)
        assert cache.l2_cache is None
        assert cache.l1_cache.max_size == 50

    def test_redis_tier_with_url(self):
        with patch("cache.redis.from_url", side_effect=redis.ConnectionError("down")):
            cache = build_cache(redis_url="redis://offline:6379/0", key_prefix="t:", promote_ttl=5)

        assert isinstance(cache.l2_cache, RedisCache)
        assert cache.l2_cache.key_prefix == "t:"
        assert cache.promote_ttl == 5


class TestBlockTimesRepo:
    """Tests for the block time repository"""

    def test_round_trip(self):
        repo = BlockTimesRepo(MultiTierCache())
        block_time = datetime(2023, 1, 31, 23, 59, 59, tzinfo=timezone.utc)

        repo.set(100, block_time)

        assert repo.get(100) == (block_time, True)

    def test_missing_height(self):
        repo = BlockTimesRepo(MultiTierCache())
        assert repo.get(42) == (None, False)

    def test_entries_are_stored_without_expiry(self):
        cache = MultiTierCache()
        repo = BlockTimesRepo(cache)
        repo.set(7, datetime(2022, 6, 1, tzinfo=timezone.utc))

        entry = cache.l1_cache.cache["block_time:7"]
        assert entry.ttl is None
        assert entry.value == "2022-06-01T00:00:00+00:00"

    def test_unreadable_value_is_a_miss(self):
        cache = MultiTierCache()
        cache.set("block_time:5", "not a timestamp", ttl=None)

        assert BlockTimesRepo(cache).get(5) == (None, False)

    def test_write_failure_raises_cache_error(self):
        cache = Mock()
        cache.set.side_effect = redis.ConnectionError("read only replica")

        with pytest.raises(CacheError) as exc_info:
            BlockTimesRepo(cache).set(9, datetime(2022, 6, 1, tzinfo=timezone.utc))

        assert "height 9" in str(exc_info.value)

    def test_shared_cache_instance(self):
        """Two repos over one cache see each other's writes"""
        cache = MultiTierCache()
        block_time = datetime(2021, 12, 31, 12, 0, tzinfo=timezone.utc)

        BlockTimesRepo(cache).set(1, block_time)

        assert BlockTimesRepo(cache).get(1) == (block_time, True)


class TestRelayRatesRepo:
    """Tests for the per-height relay rate repository"""

    def test_round_trip_keeps_precision(self):
        cache = MultiTierCache()
        repo = RelayRatesRepo(cache)

        repo.set(64000, Decimal("0.008515"))

        assert repo.get(64000) == (Decimal("0.008515"), True)
        assert cache.l1_cache.cache["pokt_per_relay:64000"].value == "0.008515"
        assert cache.l1_cache.cache["pokt_per_relay:64000"].ttl is None

    def test_missing_and_unreadable_heights(self):
        cache = MultiTierCache()
        cache.set("pokt_per_relay:3", "lots", ttl=None)
        repo = RelayRatesRepo(cache)

        assert repo.get(2) == (None, False)
        assert repo.get(3) == (None, False)

    def test_write_failure_raises_cache_error(self):
        cache = Mock()
        cache.set.side_effect = redis.ConnectionError("read only replica")

        with pytest.raises(CacheError):
            RelayRatesRepo(cache).set(4, Decimal("0.01"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
