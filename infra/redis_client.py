"""
Redis client helpers.

Purpose:
- Provide a lazily-connected async Redis client
- Back the password-reset OTP store (SETEX with TTL)
- Degrade gracefully: every helper returns None/False on failure so callers
  can fall back to in-process storage

Usage:
- client = RedisClient(settings.REDIS_URL)
- await client.set("otp:user@example.com", payload, ttl=600)
- await client.get("otp:user@example.com")
"""
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper."""

    def __init__(self, url: str):
        self.url = url
        self.redis: Optional[redis.Redis] = None

    def _client(self) -> Optional[redis.Redis]:
        if self.redis is None and self.url:
            try:
                self.redis = redis.Redis.from_url(self.url, encoding="utf-8", decode_responses=True)
            except Exception as e:
                logger.error("Failed to create Redis client for %s: %s", self.url, e)
                self.redis = None
        return self.redis

    async def ping(self) -> bool:
        client = self._client()
        if client is None:
            return False
        try:
            return bool(await client.ping())
        except Exception as e:
            logger.warning("Redis PING failed: %s", e)
            return False

    async def disconnect(self):
        """Close Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Disconnected from Redis")

    async def get(self, key: str) -> Optional[str]:
        """Get value by key; None when missing or on any error."""
        client = self._client()
        if client is None:
            return None
        try:
            return await client.get(key)
        except Exception as e:
            logger.error("Redis GET error for %s: %s", key, e)
            return None

    async def set(self, key: str, value: str, ttl: int = 300) -> bool:
        """Set key-value with TTL (seconds)."""
        client = self._client()
        if client is None:
            return False
        try:
            await client.setex(key, ttl, value)
            return True
        except Exception as e:
            logger.error("Redis SETEX error for %s: %s", key, e)
            return False

    async def ttl(self, key: str) -> Optional[int]:
        client = self._client()
        if client is None:
            return None
        try:
            return await client.ttl(key)
        except Exception as e:
            logger.error("Redis TTL error for %s: %s", key, e)
            return None

    async def delete(self, key: str) -> bool:
        """Delete a key."""
        client = self._client()
        if client is None:
            return False
        try:
            await client.delete(key)
            return True
        except Exception as e:
            logger.error("Redis DELETE error for %s: %s", key, e)
            return False
