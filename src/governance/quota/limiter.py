"""
Sliding window rate limiting backed by Redis.

Each identifier owns a sorted set ``ratelimit:{identifier}`` whose members
are request markers scored by their arrival time in milliseconds. A check
purges members older than the window, counts what is left and, if there
is room, records the current request.

The purge, count and insert are separate round-trips, so under heavy
concurrency several callers can read the same sub-limit count and all be
admitted. The overshoot is bounded by the number of racing callers.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

import redis.asyncio as redis

from governance.config import settings

logger = logging.getLogger(__name__)


class RateLimitTier(str, Enum):
    """Preset limits for endpoint classes."""

    AUTH = "auth"
    API = "api"
    PUBLIC = "public"
    ADMIN = "admin"


# Requests per minute
TIER_LIMITS: dict[RateLimitTier, int] = {
    RateLimitTier.AUTH: 5,
    RateLimitTier.API: 100,
    RateLimitTier.PUBLIC: 20,
    RateLimitTier.ADMIN: 500,
}

TIER_WINDOW_MS = 60_000


@dataclass
class LimitResult:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    remaining: int
    """Requests still available in the current window."""

    limit: int
    """Maximum requests allowed in the window."""

    retry_after: int | None = None
    """Whole seconds until a slot frees up (only when denied)."""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """
    Per-identifier sliding window limiter.

    One instance serves every identifier. Store failures fail open: an
    unreachable Redis must not take the product down with it.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        window_ms: int | None = None,
        client: Any = None,
        key_prefix: str | None = None,
        ttl_buffer_seconds: int | None = None,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            redis_url: Redis connection URL (ignored when ``client`` is given)
            window_ms: Window length in milliseconds
            client: Pre-built async Redis client
            key_prefix: Prefix for sorted set keys
            ttl_buffer_seconds: Extra key lifetime beyond the window
        """
        self._redis_url = redis_url or settings.redis_url
        self._window_ms = window_ms if window_ms is not None else settings.rate_limit_window_ms
        self._key_prefix = key_prefix if key_prefix is not None else settings.rate_limit_key_prefix
        self._ttl_buffer = (
            ttl_buffer_seconds
            if ttl_buffer_seconds is not None
            else settings.rate_limit_ttl_buffer_seconds
        )
        self._client = client

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def _get_key(self, identifier: str) -> str:
        return f"{self._key_prefix}{identifier}"

    def _get_client(self) -> Any:
        """Get or lazily create the Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                max_connections=settings.redis_max_connections,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_connect_timeout,
                decode_responses=True,
            )
        return self._client

    async def check_limit(
        self,
        identifier: str,
        limit: int,
        window_ms: int | None = None,
    ) -> LimitResult:
        """
        Check and, if allowed, record a request.

        Args:
            identifier: Opaque user, org or IP identifier (may be empty)
            limit: Requests allowed per window; 0 blocks everything,
                a negative value means unlimited
            window_ms: Override the instance window for this call

        Returns:
            LimitResult; allowed with ``remaining=limit`` if Redis fails
        """
        if limit < 0:
            return LimitResult(allowed=True, remaining=limit, limit=limit)

        window = window_ms if window_ms is not None else self._window_ms
        key = self._get_key(identifier)
        now = _now_ms()
        window_start = now - window

        try:
            client = self._get_client()

            await client.zremrangebyscore(key, "-inf", window_start)
            count = await client.zcount(key, window_start, "+inf")

            if count < limit:
                member = f"{now}-{uuid.uuid4().hex}"
                await client.zadd(key, {member: now})
                await client.expire(key, math.ceil(window / 1000) + self._ttl_buffer)
                return LimitResult(allowed=True, remaining=limit - count - 1, limit=limit)

            oldest = await client.zrange(key, 0, 0, withscores=True)
        except Exception as e:
            logger.error(f"Rate limit check failed for {key!r}, allowing request: {e}")
            return LimitResult(allowed=True, remaining=limit, limit=limit)

        if oldest:
            oldest_score = oldest[0][1]
            retry_after = math.ceil((oldest_score + window - now) / 1000)
        else:
            retry_after = math.ceil(window / 1000)

        return LimitResult(
            allowed=False,
            remaining=0,
            limit=limit,
            retry_after=max(1, retry_after),
        )

    async def check_tier(
        self,
        identifier: str,
        tier: RateLimitTier | str,
    ) -> LimitResult:
        """Check a request against a preset per-minute tier."""
        preset = RateLimitTier(tier)
        return await self.check_limit(
            f"{preset.value}:{identifier}",
            TIER_LIMITS[preset],
            window_ms=TIER_WINDOW_MS,
        )

    async def reset_limit(self, identifier: str) -> None:
        """Delete all window state for an identifier. Errors are logged."""
        key = self._get_key(identifier)
        try:
            await self._get_client().delete(key)
            logger.info(f"Reset rate limit for {key!r}")
        except Exception as e:
            logger.error(f"Failed to reset rate limit for {key!r}: {e}")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            self._client = None
