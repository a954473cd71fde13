"""
One-time password store for password resets.

Purpose:
- Issue 6-digit codes keyed by email with a TTL
- Count failed attempts and burn the code after too many
- Use Redis when reachable, otherwise an in-process dict with expiry stamps

Codes are stored as JSON {"code": .., "attempts": ..}; the Redis key TTL
and the in-memory expiry timestamp carry the lifetime.
"""
import json
import logging
import secrets
import time
from typing import Optional

from fastapi import Request

from config.settings import settings
from infra.redis_client import RedisClient

logger = logging.getLogger(__name__)

OTP_KEY_PREFIX = "otp:reset:"

# verify() outcomes
OTP_OK = "ok"
OTP_INVALID = "invalid"
OTP_EXPIRED = "expired"
OTP_TOO_MANY_ATTEMPTS = "too_many_attempts"


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


class OTPStore:
    def __init__(self, redis_client: Optional[RedisClient] = None, ttl_seconds: int = 600, max_attempts: int = 5):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self._memory: dict[str, tuple[dict, float]] = {}

    @staticmethod
    def _key(email: str) -> str:
        return OTP_KEY_PREFIX + email.strip().lower()

    async def _load(self, key: str) -> Optional[tuple[dict, int]]:
        """Return (record, remaining_ttl) or None."""
        if self.redis_client is not None:
            raw = await self.redis_client.get(key)
            if raw is not None:
                remaining = await self.redis_client.ttl(key)
                try:
                    return json.loads(raw), max(int(remaining or 0), 1)
                except ValueError:
                    logger.warning("Discarding unreadable OTP record %s", key)
                    await self.redis_client.delete(key)
                    return None
        entry = self._memory.get(key)
        if entry is None:
            return None
        record, expires_at = entry
        remaining = expires_at - time.monotonic()
        if remaining <= 0:
            self._memory.pop(key, None)
            return None
        return record, max(int(remaining), 1)

    async def _save(self, key: str, record: dict, ttl: int) -> None:
        if self.redis_client is not None and await self.redis_client.set(key, json.dumps(record), ttl=ttl):
            self._memory.pop(key, None)
            return
        self._memory[key] = (record, time.monotonic() + ttl)

    async def _drop(self, key: str) -> None:
        self._memory.pop(key, None)
        if self.redis_client is not None:
            await self.redis_client.delete(key)

    async def issue(self, email: str) -> str:
        """Create (or replace) the code for email and return it."""
        code = generate_code()
        await self._save(self._key(email), {"code": code, "attempts": 0}, self.ttl_seconds)
        return code

    async def verify(self, email: str, code: str) -> str:
        """
        Check a submitted code. A correct code is consumed; a wrong one uses
        up an attempt, and the record is dropped once max_attempts is reached.
        """
        key = self._key(email)
        loaded = await self._load(key)
        if loaded is None:
            return OTP_EXPIRED
        record, remaining = loaded
        if record.get("attempts", 0) >= self.max_attempts:
            await self._drop(key)
            return OTP_TOO_MANY_ATTEMPTS
        if secrets.compare_digest(str(record.get("code", "")), str(code)):
            await self._drop(key)
            return OTP_OK

        record["attempts"] = record.get("attempts", 0) + 1
        if record["attempts"] >= self.max_attempts:
            logger.warning("OTP for %s locked after %d failed attempts", email, record["attempts"])
            await self._drop(key)
            return OTP_TOO_MANY_ATTEMPTS
        await self._save(key, record, remaining)
        return OTP_INVALID


def build_otp_store() -> OTPStore:
    redis_client = RedisClient(settings.REDIS_URL) if settings.REDIS_URL else None
    return OTPStore(redis_client, ttl_seconds=settings.OTP_TTL_SECONDS, max_attempts=settings.OTP_MAX_ATTEMPTS)


def get_otp_store(request: Request) -> OTPStore:
    return request.app.state.otp_store
