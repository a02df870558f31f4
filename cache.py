"""
Caching layer for the monitoring service
In-process LRU and Redis tiers, plus the per-height repositories built on them
"""

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

import redis

from errors import CacheError

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Cached value with its write time and optional lifetime"""

    key: str
    value: Any
    timestamp: float
    ttl: Optional[int]
    hit_count: int = 0

    def expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.timestamp > self.ttl


class MemoryCache:
    """Thread-safe in-memory LRU cache. A ttl of None never expires."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = threading.Lock()
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        with self.lock:
            entry = self.cache.get(key)
            if entry is None:
                return None

            if entry.expired(time.time()):
                del self.cache[key]
                return None

            self.cache.move_to_end(key)
            entry.hit_count += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = 300) -> None:
        with self.lock:
            if key not in self.cache and len(self.cache) >= self.max_size:
                # Least recently used goes first
                self.cache.popitem(last=False)
                self.evictions += 1

            self.cache[key] = CacheEntry(key=key, value=value, timestamp=time.time(), ttl=ttl)
            self.cache.move_to_end(key)

    def delete(self, key: str) -> None:
        with self.lock:
            self.cache.pop(key, None)

    def clear(self) -> None:
        with self.lock:
            self.cache.clear()

    def get_stats(self) -> dict:
        with self.lock:
            return {
                "size": len(self.cache),
                "max_size": self.max_size,
                "permanent": sum(1 for entry in self.cache.values() if entry.ttl is None),
                "total_hits": sum(entry.hit_count for entry in self.cache.values()),
                "evictions": self.evictions,
            }


class RedisCache:
    """
    Redis tier shared between monitor processes.

    Values are stored as JSON under a common key prefix. When Redis cannot be
    reached, at startup or later, the cache switches to its in-memory fallback
    for the rest of the process lifetime.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        fallback_cache: Optional[MemoryCache] = None,
        key_prefix: str = "pokt:",
    ):
        """
        Args:
            redis_url: Redis connection URL (default: REDIS_URL env var or localhost)
            fallback_cache: Cache used while Redis is unavailable
            key_prefix: Prefix for every key written by the monitor
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL") or "redis://localhost:6379/0"
        self.key_prefix = key_prefix
        self.enabled = False
        self.client = None
        self.fallback_cache = fallback_cache or MemoryCache(max_size=1000)
        self.fallback_mode = False

        try:
            self.client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
            )
            self.client.ping()
            self.enabled = True
            logger.info(f"Redis cache connected: {self.redis_url}")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable ({e}), block times and rates cached in memory only")
            self.fallback_mode = True
            self.client = None

    def _get_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _degrade(self, operation: str, key: str, error: Exception) -> None:
        logger.error(f"Redis {operation} failed for {key}: {error}; switching to memory fallback")
        self.fallback_mode = True

    def get(self, key: str) -> Optional[Any]:
        if self.fallback_mode:
            return self.fallback_cache.get(key)

        try:
            value = self.client.get(self._get_key(key))
        except redis.RedisError as e:
            self._degrade("get", key, e)
            return self.fallback_cache.get(key)

        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error(f"Dropping undecodable Redis value for {key}: {e}")
            self.delete(key)
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = 300) -> None:
        """Write a value; a ttl of None stores it without expiry. Serialization errors propagate."""
        if self.fallback_mode:
            self.fallback_cache.set(key, value, ttl)
            return

        serialized = json.dumps(value)
        try:
            if ttl is None:
                self.client.set(self._get_key(key), serialized)
            else:
                self.client.setex(self._get_key(key), ttl, serialized)
        except redis.RedisError as e:
            self._degrade("set", key, e)
            self.fallback_cache.set(key, value, ttl)

    def delete(self, key: str) -> None:
        if self.fallback_mode:
            self.fallback_cache.delete(key)
            return

        try:
            self.client.delete(self._get_key(key))
        except redis.RedisError as e:
            self._degrade("delete", key, e)
            self.fallback_cache.delete(key)

    def clear(self) -> None:
        """Remove every key under the monitor's prefix"""
        if self.fallback_mode:
            self.fallback_cache.clear()
            return

        try:
            keys = list(self.client.scan_iter(match=f"{self.key_prefix}*", count=500))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            self._degrade("clear", "*", e)
            self.fallback_cache.clear()

    def get_stats(self) -> dict:
        if self.fallback_mode:
            stats = self.fallback_cache.get_stats()
            stats["mode"] = "fallback"
            return stats

        try:
            info = self.client.info("stats")
        except redis.RedisError as e:
            return {"mode": "redis", "error": str(e)}
        return {
            "mode": "redis",
            "key_prefix": self.key_prefix,
            "keyspace_hits": info.get("keyspace_hits", 0),
            "keyspace_misses": info.get("keyspace_misses", 0),
        }


class MultiTierCache:
    """Memory in front of an optional Redis tier"""

    def __init__(
        self,
        memory_cache: Optional[MemoryCache] = None,
        redis_cache: Optional[RedisCache] = None,
        promote_ttl: Optional[int] = 300,
    ):
        self.l1_cache = memory_cache or MemoryCache(max_size=1000)
        self.l2_cache = redis_cache
        self.promote_ttl = promote_ttl
        self.stats = {"l1_hits": 0, "l2_hits": 0, "misses": 0}

    def get(self, key: str) -> Optional[Any]:
        value = self.l1_cache.get(key)
        if value is not None:
            self.stats["l1_hits"] += 1
            return value

        if self.l2_cache:
            value = self.l2_cache.get(key)
            if value is not None:
                self.stats["l2_hits"] += 1
                self.l1_cache.set(key, value, self.promote_ttl)
                return value

        self.stats["misses"] += 1
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = 300) -> None:
        self.l1_cache.set(key, value, ttl)
        if self.l2_cache:
            self.l2_cache.set(key, value, ttl)

    def delete(self, key: str) -> None:
        self.l1_cache.delete(key)
        if self.l2_cache:
            self.l2_cache.delete(key)

    def clear(self) -> None:
        self.l1_cache.clear()
        if self.l2_cache:
            self.l2_cache.clear()

    def get_stats(self) -> dict:
        hits = self.stats["l1_hits"] + self.stats["l2_hits"]
        lookups = hits + self.stats["misses"]
        return {
            "l1": self.l1_cache.get_stats(),
            "l2": self.l2_cache.get_stats() if self.l2_cache else None,
            "hits": {"l1": self.stats["l1_hits"], "l2": self.stats["l2_hits"], "total": hits},
            "misses": self.stats["misses"],
            "hit_rate": (hits / lookups) * 100 if lookups else 0.0,
        }


class BlockTimesRepo:
    """
    Block time store on top of any cache tier.

    Block times never change once recorded, so entries are written without expiry.
    """

    KEY_PREFIX = "block_time:"

    def __init__(self, cache):
        self.cache = cache

    def get(self, height: int) -> Tuple[Optional[datetime], bool]:
        """Return (time, found) for a height"""
        value = self.cache.get(f"{self.KEY_PREFIX}{height}")
        if value is None:
            return None, False

        try:
            return datetime.fromisoformat(value).astimezone(timezone.utc), True
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable cached block time for height {height}: {e}")
            return None, False

    def set(self, height: int, block_time: datetime) -> None:
        """Store the time of a height"""
        try:
            self.cache.set(f"{self.KEY_PREFIX}{height}", block_time.isoformat(), ttl=None)
        except Exception as e:
            raise CacheError(f"BlockTimesRepo.set: height {height}: {e}") from e


class RelayRatesRepo:
    """POKT-per-relay rate in force at each height, stored without expiry"""

    KEY_PREFIX = "pokt_per_relay:"

    def __init__(self, cache):
        self.cache = cache

    def get(self, height: int) -> Tuple[Optional[Decimal], bool]:
        value = self.cache.get(f"{self.KEY_PREFIX}{height}")
        if value is None:
            return None, False

        try:
            return Decimal(value), True
        except (TypeError, ValueError, InvalidOperation) as e:
            logger.warning(f"Discarding unreadable cached relay rate for height {height}: {e}")
            return None, False

    def set(self, height: int, rate: Decimal) -> None:
        # Stored as a string so Redis JSON keeps every digit
        try:
            self.cache.set(f"{self.KEY_PREFIX}{height}", str(rate), ttl=None)
        except Exception as e:
            raise CacheError(f"RelayRatesRepo.set: height {height}: {e}") from e


def build_cache(
    redis_url: str = "", key_prefix: str = "pokt:", max_size: int = 1000, promote_ttl: int = 60
) -> MultiTierCache:
    """Build the cache tiers for the configured backend"""
    memory = MemoryCache(max_size=max_size)
    if not redis_url:
        logger.info("REDIS_URL not set, using in-memory cache only")
        return MultiTierCache(memory_cache=memory)

    redis_cache = RedisCache(
        redis_url=redis_url,
        fallback_cache=MemoryCache(max_size=max_size),
        key_prefix=key_prefix,
    )
    return MultiTierCache(memory_cache=memory, redis_cache=redis_cache, promote_ttl=promote_ttl)
