"""Redis client configuration and the Redis-backed cache store."""

import json
from typing import Any, cast

import redis
import structlog

from clinic_portal.config import settings

logger = structlog.get_logger(__name__)

# Global Redis client instance
_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis | None:
    """
    Get or create the Redis client.

    Returns:
        Redis client instance, or None when ``REDIS_HOST`` is not set and
        caches fall back to process memory
    """
    global _redis_client

    if not settings.redis_enabled:
        return None

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=cast(str, settings.redis_host),
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_timeout=2,
            socket_keepalive=True,
            health_check_interval=30,
        )
        logger.debug("redis_client_created", host=settings.redis_host, port=settings.redis_port)

    return _redis_client


async def check_redis_connection() -> bool | None:
    """Ping Redis: True if healthy, False if unreachable, None if not configured."""
    client = get_redis_client()
    if client is None:
        return None

    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning("redis_health_check_failed", error=str(e))
        return False
    return True


def close_redis_connection() -> None:
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class CacheManager:
    """
    JSON cache over Redis.

    A cache is never the source of truth here, so every Redis failure is
    logged and reported as a miss (reads) or as ``False`` / ``0`` (writes).
    """

    scan_batch = 100

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        try:
            value = cast(str | None, self.redis.get(key))
        except redis.RedisError as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("cache_entry_corrupt", key=key)
            return None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Serialize and store a value.

        Args:
            key: Cache key
            value: JSON-serializable value; datetimes and UUIDs go through ``str``
            ttl: Time to live in seconds, or None to keep it until deleted

        Returns:
            True if stored, False otherwise
        """
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                self.redis.setex(key, ttl, payload)
            else:
                self.redis.set(key, payload)
        except redis.RedisError as e:
            logger.warning("cache_write_failed", key=key, error=str(e))
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(key))
        except redis.RedisError as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))
            return False

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern such as ``eligibility:<id>:*``.

        Keys are collected with SCAN so a large keyspace never blocks Redis.
        """
        deleted = 0
        try:
            batch: list[str] = []
            for key in self.redis.scan_iter(match=pattern, count=self.scan_batch):
                batch.append(cast(str, key))
                if len(batch) >= self.scan_batch:
                    deleted += cast(int, self.redis.delete(*batch))
                    batch = []
            if batch:
                deleted += cast(int, self.redis.delete(*batch))
        except redis.RedisError as e:
            logger.warning("cache_delete_pattern_failed", pattern=pattern, error=str(e))
        return deleted
