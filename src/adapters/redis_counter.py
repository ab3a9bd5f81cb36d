"""
Redis counter store for the analytics rate limiter.

Thin wrapper over INCR/EXPIRE/TTL. Every redis failure is re-raised as
CounterStoreError so the limiter can fall back to local counters.
"""

from __future__ import annotations

import logging

import redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from src.components.analytics import CounterStoreError

logger = logging.getLogger(__name__)

# Request path; fail fast rather than hold the collector open.
REDIS_RETRIES = 1
SOCKET_TIMEOUT_SECONDS = 0.5


def create_redis_client(url: str) -> redis.Redis:
    """
    Create a Redis client for rate limit counters.

    Args:
        url: Redis connection URL

    Returns:
        redis.Redis client instance
    """
    retry = Retry(ExponentialBackoff(cap=1, base=0.05), retries=REDIS_RETRIES)

    return redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
        retry=retry,
        retry_on_error=[RedisTimeoutError, RedisConnectionError],
        health_check_interval=30,
    )


class RedisCounterStore:
    """CounterStorePort backed by Redis."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCounterStore:
        return cls(create_redis_client(url))

    def incr(self, key: str) -> int:
        try:
            return int(self._client.incr(key))
        except RedisError as e:
            raise CounterStoreError(f"INCR {key} failed: {e}") from e

    def expire(self, key: str, seconds: int) -> None:
        try:
            self._client.expire(key, seconds)
        except RedisError as e:
            raise CounterStoreError(f"EXPIRE {key} failed: {e}") from e

    def ttl(self, key: str) -> int:
        try:
            return int(self._client.ttl(key))
        except RedisError as e:
            raise CounterStoreError(f"TTL {key} failed: {e}") from e

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError:
            logger.debug("Error closing redis client", exc_info=True)
