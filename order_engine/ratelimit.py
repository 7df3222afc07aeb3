"""
Redis-backed rate limiting for the public write endpoints.

Fixed window per client IP: ``INCR`` a counter keyed by route and window,
``EXPIRE`` it on first use. When Redis is unreachable requests are allowed
through.
"""
import logging
import time
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

from . import config

logger = logging.getLogger(__name__)

# Initialize Redis client (connects lazily on first command)
redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)

TIERS = {
    "strict": "RATE_LIMIT_STRICT",
    "moderate": "RATE_LIMIT_MODERATE",
}


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def hit(key: str, limit: int, window: int, now: Optional[float] = None) -> bool:
    """
    Count one request against ``key``.

    Returns:
        True if the request is within the limit (or Redis is unavailable)
    """
    now = time.time() if now is None else now
    bucket = f"ratelimit:{key}:{int(now // window)}"
    try:
        count = redis_client.incr(bucket)
        if count == 1:
            redis_client.expire(bucket, window)
    except redis.RedisError as e:
        logger.warning(f"Rate limiter unavailable, allowing request: {e}")
        return True
    return count <= limit


class RateLimiter:
    """
    FastAPI dependency enforcing one rate-limit tier on a route.

    Example:
        @app.post("/orders", dependencies=[Depends(RateLimiter("orders", "strict"))])
    """

    def __init__(self, scope: str, tier: str = "moderate"):
        self.scope = scope
        self.tier = tier

    @property
    def limit(self) -> int:
        return getattr(config, TIERS[self.tier])

    def __call__(self, request: Request) -> None:
        if not config.RATE_LIMIT_ENABLED:
            return
        ip = client_ip(request)
        if not hit(f"{self.scope}:{ip}", self.limit, config.RATE_LIMIT_WINDOW_SECONDS):
            logger.warning(f"Rate limit exceeded for {ip} on {self.scope}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests, please try again later",
                headers={"Retry-After": str(config.RATE_LIMIT_WINDOW_SECONDS)},
            )
