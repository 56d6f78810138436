"""
Redis Connection Management

Redis only backs the tenant policy cache, which fails open: when Redis is
unavailable lookups miss and policies are read from the database. The
client therefore uses short timeouts, and after a failed connection it
waits RECONNECT_COOLDOWN seconds before dialling again.
"""

import json
import logging
import time
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from booking_engine.config import settings
from booking_engine.core.scheduling.models import TenantPolicy

logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "booking:v1:"

RECONNECT_COOLDOWN = 30.0


class RedisClient:
    """Process-wide Redis connection for the policy cache."""

    _client: Optional[Redis] = None
    _next_attempt: float = 0.0

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create the Redis client.

        Returns:
            Redis client, or None while Redis is unreachable
        """
        if cls._client is not None:
            return cls._client
        if time.monotonic() < cls._next_attempt:
            return None

        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=1.0,
            socket_timeout=1.0,
            retry_on_timeout=True,
            retry=Retry(ExponentialBackoff(cap=0.5), retries=2),
        )
        try:
            await client.ping()
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Redis unreachable, policy cache off for {RECONNECT_COOLDOWN:.0f}s: {e}")
            cls._next_attempt = time.monotonic() + RECONNECT_COOLDOWN
            await client.aclose()
            return None

        cls._client = client
        logger.info("Redis connection established")
        return cls._client

    @classmethod
    async def close(cls) -> None:
        if cls._client is None:
            return
        try:
            await cls._client.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            cls._client = None
            cls._next_attempt = 0.0


async def get_redis() -> Optional[Redis]:
    """Get Redis client, or None if unavailable."""
    return await RedisClient.get_client()


class PolicyCacheStore:
    """
    Redis-based tenant policy cache.

    Keys (with namespace):
    - booking:v1:policy:{tenant_id} -> policy data (JSON), expires after TTL

    Every failure is treated as a cache miss. With `connect`, a store
    created while Redis was down picks the client up once it returns.
    """

    POLICY_PREFIX = f"{APP_PREFIX}policy:"

    def __init__(
        self,
        redis_client: Optional[Redis],
        ttl: Optional[int] = None,
        connect: Optional[Callable[[], Awaitable[Optional[Redis]]]] = None,
    ):
        self.redis = redis_client
        self.ttl = settings.policy_cache_ttl if ttl is None else ttl
        self._connect = connect

    def _policy_key(self, tenant_id: str) -> str:
        return f"{self.POLICY_PREFIX}{tenant_id}"

    @property
    def enabled(self) -> bool:
        return self.redis is not None and self.ttl > 0

    async def _client(self) -> Optional[Redis]:
        if self.ttl <= 0:
            return None
        if self.redis is None and self._connect is not None:
            self.redis = await self._connect()
        return self.redis

    async def get(self, tenant_id: str) -> Optional[TenantPolicy]:
        """
        Get a cached policy.

        Returns:
            TenantPolicy or None on miss/Redis unavailable
        """
        client = await self._client()
        if client is None:
            return None

        try:
            data = await client.get(self._policy_key(tenant_id))
            if data is None:
                return None
            return TenantPolicy.from_dict(json.loads(data))

        except RedisError as e:
            logger.warning(f"Policy cache read failed for tenant {tenant_id}: {e}")
            return None
        except (ValueError, KeyError) as e:
            logger.warning(f"Discarding malformed cached policy for tenant {tenant_id}: {e}")
            return None

    async def set(self, policy: TenantPolicy) -> bool:
        """Cache a policy for `ttl` seconds; False if it was not stored."""
        client = await self._client()
        if client is None:
            return False

        try:
            await client.setex(
                self._policy_key(policy.tenant_id),
                timedelta(seconds=self.ttl),
                json.dumps(policy.to_dict()),
            )
            return True
        except RedisError as e:
            logger.warning(f"Policy cache write failed for tenant {policy.tenant_id}: {e}")
            return False

    async def invalidate(self, tenant_id: str) -> bool:
        """Drop a cached policy."""
        client = await self._client()
        if client is None:
            return False

        try:
            deleted = await client.delete(self._policy_key(tenant_id))
            return bool(deleted)
        except RedisError as e:
            logger.error(f"Failed to invalidate policy for tenant {tenant_id}: {e}")
            return False


async def get_policy_cache() -> PolicyCacheStore:
    """
    Get PolicyCacheStore instance.

    Returns a store even if Redis is unavailable; it reconnects lazily.
    """
    return PolicyCacheStore(await get_redis(), connect=get_redis)


async def check_redis_health() -> bool:
    """True if Redis is reachable and answers PING."""
    client = await get_redis()
    if client is None:
        return False
    try:
        await client.ping()
        return True
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
