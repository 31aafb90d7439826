"""
Sliding-window rate limiting for the ``/api`` routes.

Redis sorted sets back the window when a client is supplied so that limits
hold across workers; otherwise counts are kept in process memory.
"""

import time
import uuid
from collections import defaultdict
from typing import Callable, Iterable, Optional

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from dragonchat.logging_config import logger

RATE_LIMIT_MESSAGE = "Too many requests, please try again later"


class InMemoryRateLimiter:
    """Per-process limiter for single-instance and development setups."""

    def __init__(self) -> None:
        self._requests: dict[str, list[float]] = defaultdict(list)

    async def is_rate_limited(
        self, key: str, max_requests: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        """
        Returns (is_limited, remaining, reset_time).
        """
        now = time.time()
        cutoff = now - window_seconds
        hits = [ts for ts in self._requests[key] if ts > cutoff]
        self._requests[key] = hits

        if len(hits) >= max_requests:
            reset_time = int(min(hits) + window_seconds) if hits else int(now + window_seconds)
            return True, 0, reset_time

        hits.append(now)
        return False, max_requests - len(hits), int(now + window_seconds)


class RedisRateLimiter:
    """Shared limiter using a Redis ZSET per key."""

    def __init__(self, redis_client: Redis) -> None:
        self.redis = redis_client

    async def is_rate_limited(
        self, key: str, max_requests: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        now = time.time()
        redis_key = f"dragonchat:ratelimit:{key}"

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zcard(redis_key)
        # Unique member so concurrent hits in the same instant all count.
        pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(redis_key, window_seconds + 10)
        results = await pipe.execute()
        current_count = int(results[1])

        if current_count >= max_requests:
            oldest = await self.redis.zrange(redis_key, 0, 0, withscores=True)
            reset_time = int(oldest[0][1] + window_seconds) if oldest else int(now + window_seconds)
            return True, 0, reset_time

        return False, max_requests - current_count - 1, int(now + window_seconds)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        redis_client: Optional[Redis] = None,
        max_requests: int = 1000,
        window_seconds: int = 900,
        prefix: str = "/api",
        exempt_paths: Iterable[str] = ("/api/health",),
        get_client_ip: Optional[Callable[[Request], str]] = None,
    ) -> None:
        super().__init__(app)
        self.memory_limiter = InMemoryRateLimiter()
        self.redis_limiter = RedisRateLimiter(redis_client) if redis_client is not None else None
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix
        self.exempt_paths = set(exempt_paths)
        self.get_client_ip = get_client_ip or self._default_get_client_ip

    def _default_get_client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        if request.client:
            return request.client.host
        return "unknown"

    async def _check(self, key: str) -> tuple[bool, int, int]:
        if self.redis_limiter is not None:
            try:
                return await self.redis_limiter.is_rate_limited(
                    key, self.max_requests, self.window_seconds
                )
            except (RedisError, OSError) as exc:
                logger.warning("Redis rate limiter unavailable, using in-memory window: %s", exc)
        return await self.memory_limiter.is_rate_limited(key, self.max_requests, self.window_seconds)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(self.prefix) or path in self.exempt_paths:
            return await call_next(request)

        key = f"{self.get_client_ip(request)}:{path}"
        is_limited, remaining, reset_time = await self._check(key)
        headers = {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(reset_time),
        }

        if is_limited:
            retry_after = max(reset_time - int(time.time()), 0)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"error": RATE_LIMIT_MESSAGE},
                headers={**headers, "Retry-After": str(retry_after)},
            )

        response: Response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
