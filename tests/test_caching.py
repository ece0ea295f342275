"""Tests for the cache stores behind the eligibility cache."""

from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import redis

from clinic_portal.core.cache import MemoryCacheStore
from clinic_portal.core.redis_client import CacheManager
from clinic_portal.schemas.appointments import AppointmentType
from clinic_portal.services.eligibility_cache import EligibilityCache


def test_cache_manager_get_json():
    """Test CacheManager get_json method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    # Test cache miss
    mock_redis.get.return_value = None
    result = cache_manager.get_json("eligibility:1:bhrt")
    assert result is None
    mock_redis.get.assert_called_once_with("eligibility:1:bhrt")

    # Test cache hit
    mock_redis.reset_mock()
    mock_redis.get.return_value = '{"cached_at": "2026-03-02T12:00:00+00:00", "result": {"eligible": true}}'
    result = cache_manager.get_json("eligibility:1:bhrt")
    assert result == {"cached_at": "2026-03-02T12:00:00+00:00", "result": {"eligible": True}}


def test_cache_manager_set_json():
    """Test CacheManager set_json method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    # Test without TTL
    assert cache_manager.set_json("key", {"eligible": True}) is True
    mock_redis.set.assert_called_once_with("key", '{"eligible": true}')

    # Test with TTL
    mock_redis.reset_mock()
    assert cache_manager.set_json("key", {"eligible": True}, ttl=60) is True
    mock_redis.setex.assert_called_once_with("key", 60, '{"eligible": true}')


def test_cache_manager_errors_are_misses():
    """Test CacheManager treats Redis failures as cache misses."""
    mock_redis = MagicMock()
    mock_redis.get.side_effect = redis.ConnectionError("redis down")
    mock_redis.setex.side_effect = redis.ConnectionError("redis down")
    cache_manager = CacheManager(redis_client=mock_redis)

    assert cache_manager.get_json("key") is None
    assert cache_manager.set_json("key", {}, ttl=60) is False


def test_cache_manager_corrupt_entry_is_a_miss():
    mock_redis = MagicMock()
    mock_redis.get.return_value = "{not json"

    assert CacheManager(mock_redis).get_json("eligibility:1:bhrt") is None


def test_cache_manager_delete_pattern():
    """Test CacheManager delete_pattern method."""
    mock_redis = MagicMock()
    cache_manager = CacheManager(redis_client=mock_redis)

    mock_redis.scan_iter.return_value = iter(["eligibility:1:bhrt", "eligibility:1:follow_up"])
    mock_redis.delete.return_value = 2

    result = cache_manager.delete_pattern("eligibility:1:*")

    mock_redis.scan_iter.assert_called_once_with(match="eligibility:1:*", count=100)
    mock_redis.delete.assert_called_once_with("eligibility:1:bhrt", "eligibility:1:follow_up")
    assert result == 2


def test_memory_store():
    """Test MemoryCacheStore copies values and matches patterns."""
    store = MemoryCacheStore()
    value = {"reasons": ["Labs pending"]}
    store.set_json("eligibility:1:bhrt", value)
    store.set_json("eligibility:1:follow_up", {})
    store.set_json("eligibility:2:bhrt", {})

    value["reasons"].append("changed")
    assert store.get_json("eligibility:1:bhrt") == {"reasons": ["Labs pending"]}

    assert store.delete_pattern("eligibility:1:*") == 2
    assert len(store) == 1
    assert store.get_json("missing") is None


@pytest.mark.asyncio
async def test_eligibility_cache_over_redis(backend, clock):
    """Test the eligibility cache writes through a Redis-backed store."""
    mock_redis = MagicMock()
    mock_redis.get.return_value = None
    cache = EligibilityCache(backend, store=CacheManager(mock_redis), clock=clock, ttl_seconds=60)

    await cache.check_eligibility(uuid4(), AppointmentType.BHRT)

    key, ttl, _ = mock_redis.setex.call_args.args
    assert key.startswith("eligibility:")
    assert key.endswith(":bhrt")
    assert ttl == 60


def test_memory_store_expires_and_prunes(clock):
    """Test MemoryCacheStore honours ttl and drops expired keys on write."""
    store = MemoryCacheStore(clock=clock)
    store.set_json("eligibility:1:bhrt", {"eligible": True}, ttl=60)
    store.set_json("settings", {"theme": "dark"})

    clock.advance(seconds=59)
    assert store.get_json("eligibility:1:bhrt") == {"eligible": True}

    clock.advance(seconds=1)
    assert store.get_json("eligibility:1:bhrt") is None
    assert store.get_json("settings") == {"theme": "dark"}

    store.set_json("eligibility:2:bhrt", {"eligible": False}, ttl=60)
    clock.advance(hours=1)
    store.set_json("eligibility:3:bhrt", {"eligible": True}, ttl=60)

    assert len(store) == 2
