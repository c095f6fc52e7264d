import logging
from dataclasses import dataclass

import redis
from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "ratelimit:"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_in: int


class RateLimiter:
    """
    Fixed-window request counter kept in Redis.

    Built once at process start and handed to handlers through
    ``app.state``; the counters live in Redis so every instance of the
    service shares the same window.
    """

    def __init__(self, redis_client):
        self._redis = redis_client

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        redis_key = f"{RATE_LIMIT_PREFIX}{key}:{limit}:{window_seconds}"
        try:
            count = int(self._redis.incr(redis_key))
            if count == 1:
                self._redis.expire(redis_key, window_seconds)
            ttl = self._redis.ttl(redis_key)
        except redis.RedisError:
            # Fail open: a counter outage must not take checkout down with it
            logger.warning("Rate limit store unavailable", exc_info=True, extra={"key": key})
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_in=window_seconds)

        if ttl is None or ttl < 0:
            self._redis.expire(redis_key, window_seconds)
            ttl = window_seconds
        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_in=int(ttl),
        )


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return request.client.host if request.client else "unknown"


def rate_limit(scope: str, limit: int, window_seconds: int = 60):
    """Dependency factory enforcing ``limit`` requests per window for ``scope``."""
    def _check(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        result = limiter.hit(f"{scope}:{client_identifier(request)}", limit, window_seconds)
        if not result.allowed:
            logger.warning("Rate limit exceeded", extra={"scope": scope})
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={
                    "Retry-After": str(result.reset_in),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )
    return _check
