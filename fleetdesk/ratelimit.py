"""
Rate limiting for FleetDesk API
Redis sliding-window limiter applied to hold creation
"""

import time
import logging
from typing import Optional

from fastapi import HTTPException, Request
import redis.asyncio as aioredis

from .config import get_settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Simple rate limiter using Redis sliding window."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or get_settings().redis_url
        self.redis = None

    async def init_redis(self):
        if not self.redis:
            self.redis = aioredis.from_url(self.redis_url, decode_responses=True)

    async def is_rate_limited(self, key: str, limit: int = 5, window: int = 60) -> bool:
        """
        Check if key is rate limited.
        Args:
            key: Unique identifier (IP + endpoint)
            limit: Max requests allowed in the window
            window: Time window in seconds
        """
        await self.init_redis()

        now = time.time()
        window_start = now - window

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(f"rate_limit:{key}", 0, window_start)
        pipe.zcard(f"rate_limit:{key}")
        pipe.zadd(f"rate_limit:{key}", {f"{now:.6f}": now})
        pipe.expire(f"rate_limit:{key}", window + 10)

        results = await pipe.execute()
        current_count = results[1]

        return current_count >= limit

    async def close(self):
        if self.redis:
            await self.redis.close()
            self.redis = None


# Global rate limiter instance
rate_limiter = RateLimiter()


def client_ip(request: Request) -> str:
    ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not ip:
        ip = request.headers.get("X-Real-IP", "")
    if not ip:
        ip = getattr(request.client, "host", "unknown")
    return ip


class RateLimit:
    """FastAPI dependency enforcing `limit` requests per `window` seconds per client IP."""

    def __init__(self, limit: Optional[int] = None, window: Optional[int] = None):
        self.limit = limit
        self.window = window

    async def __call__(self, request: Request) -> None:
        settings = getattr(request.app.state, "settings", None) or get_settings()
        if not settings.rate_limit_enabled:
            return

        limit = self.limit or settings.rate_limit_holds
        window = self.window or settings.rate_limit_window
        ip = client_ip(request)
        rate_key = f"{ip}:{request.url.path}"

        try:
            limited = await rate_limiter.is_rate_limited(rate_key, limit, window)
        except Exception as e:
            # Continue without rate limiting if Redis fails
            logger.warning(f"Rate limiting error: {e}")
            return

        if limited:
            logger.warning(f"Rate limit exceeded for {ip} on {request.url.path}")
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "RATE_LIMITED",
                    "limit": limit,
                    "window": window,
                    "message": f"Too many requests. Limit: {limit} requests per {window} seconds."
                }
            )
