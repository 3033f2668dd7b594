"""Redis connection and the JSON read-through cache used for user lookups."""

import json
from typing import Any, cast

import redis
import structlog

from app.config import settings

logger = structlog.get_logger(__name__)

# Process-wide client, created lazily
_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """Return the shared Redis client, connecting on first use."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username or None,
            password=settings.redis_password or None,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    """Ping Redis; False when it is unreachable."""
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError:
        return False


def close_redis_connection() -> None:
    """Drop the shared client on shutdown."""
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class CacheManager:
    """
    Namespaced JSON cache.

    Redis is an optimisation here, never a dependency: every Redis error
    is logged and reported as a miss or a failed write.
    """

    def __init__(self, redis_client: redis.Redis, namespace: str = "clinic"):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get_json(self, key: str) -> Any | None:
        """Cached value for ``key``, or None on a miss."""
        try:
            raw = cast(str | None, self.redis.get(self._key(key)))
        except redis.RedisError as e:
            logger.debug("cache_read_failed", key=key, error=str(e))
            return None
        return json.loads(raw) if raw else None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Store ``value`` as JSON.

        Args:
            key: Cache key, namespaced on write
            value: JSON-serializable value; datetimes are stored as strings
            ttl: Expiry in seconds, or None to keep it until evicted

        Returns:
            True if Redis accepted the write
        """
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                self.redis.setex(self._key(key), ttl, payload)
            else:
                self.redis.set(self._key(key), payload)
        except redis.RedisError as e:
            logger.debug("cache_write_failed", key=key, error=str(e))
            return False
        return True
