"""
Read-through cache for upstream fetch responses.

Backed by Redis when REDIS_URL is configured; otherwise callers hold None and
go straight to the fetch service. Every Redis failure is logged and treated
as a cache miss so the cache can never block ingestion.
"""

from typing import Optional

import redis

from utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_FETCH_CACHE_TTL = 3600


def fetch_cache_key(repo_id: str, from_time: str, to_time: str) -> str:
    """Cache key for one repo's fetch window."""
    return f"fetch:repo:{repo_id}:{from_time}:{to_time}"


class FetchCache:
    """Thin, failure-tolerant wrapper around a Redis client."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = DEFAULT_FETCH_CACHE_TTL):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(
        cls,
        redis_url: Optional[str],
        ttl_seconds: int = DEFAULT_FETCH_CACHE_TTL
    ) -> Optional["FetchCache"]:
        """
        Build a cache from a Redis URL.

        Returns None when no URL is configured or the URL is invalid; the
        connection itself is opened lazily on first use.
        """
        if not redis_url:
            logger.info("REDIS_URL not set - fetch cache disabled")
            return None
        try:
            client = redis.Redis.from_url(
                redis_url,
                socket_connect_timeout=2,
                socket_timeout=2,
                decode_responses=True,
            )
        except ValueError as e:
            logger.warning(f"Invalid REDIS_URL, fetch cache disabled: {e}")
            return None
        return cls(client, ttl_seconds=ttl_seconds)

    def get(self, key: str) -> Optional[str]:
        """Cached value, or None on miss or any Redis error."""
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Fetch cache read failed for {key}: {e}")
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """Store a value with a TTL. Returns False if Redis rejected it."""
        try:
            self.client.set(key, value, ex=ttl_seconds or self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"Fetch cache write failed for {key}: {e}")
            return False
        return True

    def status(self) -> str:
        """'ok' when Redis answers PING, 'down' otherwise."""
        try:
            return "ok" if self.client.ping() else "down"
        except redis.RedisError:
            return "down"
