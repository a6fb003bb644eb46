"""
Redis-backed response tokens.

A single shared connection (retry with exponential backoff) and the token
store used when response tokens must be visible to every worker. Token
keys carry a native TTL so Redis evicts them on expiry.
"""

import json
import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings
from app.core.rescheduling.errors import StorageError
from app.core.rescheduling.tokens import ResponseTokenData, TokenStore

logger = logging.getLogger(__name__)

# Namespace shared by every key this service writes
APP_PREFIX = "reschedule:v1:"


class RedisClient:
    """Process-wide Redis connection, created on first use."""

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Connect (or reuse the connection) to settings.redis_url.

        Returns:
            Redis client, or None if the server cannot be reached
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=Retry(ExponentialBackoff(), retries=3),
            )
            await cls._client.ping()
            cls._connected = True
            logger.info(f"Connected to Redis token store at {settings.redis_url.split('@')[-1]}")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Redis token store unreachable: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        if cls._client is None:
            return
        try:
            await cls._client.aclose()
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            cls._client = None
            cls._connected = False


async def get_redis() -> Optional[Redis]:
    """Shared client, or None when Redis is down."""
    return await RedisClient.get_client()


class RedisTokenStore(TokenStore):
    """
    Redis-backed response token storage.

    Keys (with namespace):
    - reschedule:v1:token:{token} -> token data (JSON), TTL until expiry

    Redis failures raise StorageError; there is no degraded mode.
    """

    TOKEN_PREFIX = f"{APP_PREFIX}token:"

    def __init__(self, redis_client: Optional[Redis] = None):
        self.redis = redis_client

    def _key(self, token: str) -> str:
        """Generate token key with namespace."""
        return f"{self.TOKEN_PREFIX}{token}"

    async def _client(self) -> Redis:
        if self.redis is None:
            self.redis = await get_redis()
        if self.redis is None:
            raise StorageError("Redis unavailable for response tokens")
        return self.redis

    async def put(self, data: ResponseTokenData) -> None:
        client = await self._client()
        # Lifetime as issued; a Redis TTL is relative to the write
        ttl_seconds = max(1, int((data.expires_at - data.created_at).total_seconds()))
        try:
            await client.setex(self._key(data.token), ttl_seconds, json.dumps(data.to_dict()))
        except RedisError as e:
            logger.error(f"Failed to store response token: {e}")
            raise StorageError(f"Failed to store response token: {e}") from e

    async def get(self, token: str) -> Optional[ResponseTokenData]:
        client = await self._client()
        try:
            raw = await client.get(self._key(token))
        except RedisError as e:
            logger.error(f"Failed to read response token: {e}")
            raise StorageError(f"Failed to read response token: {e}") from e
        return ResponseTokenData.from_dict(json.loads(raw)) if raw else None

    async def pop(self, token: str) -> Optional[ResponseTokenData]:
        client = await self._client()
        try:
            raw = await client.getdel(self._key(token))
        except RedisError as e:
            logger.error(f"Failed to consume response token: {e}")
            raise StorageError(f"Failed to consume response token: {e}") from e
        return ResponseTokenData.from_dict(json.loads(raw)) if raw else None

    async def delete(self, token: str) -> bool:
        client = await self._client()
        try:
            return bool(await client.delete(self._key(token)))
        except RedisError as e:
            logger.error(f"Failed to delete response token: {e}")
            raise StorageError(f"Failed to delete response token: {e}") from e

    async def items(self) -> list[ResponseTokenData]:
        client = await self._client()
        try:
            keys = [key async for key in client.scan_iter(match=f"{self.TOKEN_PREFIX}*")]
            if not keys:
                return []
            values = await client.mget(keys)
        except RedisError as e:
            logger.error(f"Failed to list response tokens: {e}")
            raise StorageError(f"Failed to list response tokens: {e}") from e
        return [ResponseTokenData.from_dict(json.loads(v)) for v in values if v]


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
