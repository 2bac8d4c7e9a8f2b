"""
Redis-backed sliding window rate limiting.

`SlidingWindowLimiter` counts hits per key inside a rolling window using a
sorted set. It backs both the global per-IP middleware and the stricter
hourly limit on the public intake form. Both fail open when Redis is down.
"""

import time
import logging
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

import redis.asyncio as aioredis

from ouvidoria.config import settings
from ouvidoria.middleware.request_context import client_ip_of

logger = logging.getLogger(__name__)

# Provider webhooks retry on 429, which would only amplify load
EXEMPT_PREFIXES = ("/api/health", "/metrics", "/api/webhooks/")


class SlidingWindowLimiter:
    def __init__(self, prefix: str, limit: int, window_seconds: int):
        self.prefix = prefix
        self.limit = limit
        self.window = window_seconds
        self._redis: aioredis.Redis | None = None

    async def _get_redis(self) -> aioredis.Redis | None:
        if self._redis is None:
            try:
                client = aioredis.from_url(settings.redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
            except Exception as exc:
                logger.warning("Rate limiter: Redis unavailable (%s), passing through", exc)
                self._redis = None
        return self._redis

    async def hit(self, key: str) -> tuple[bool, int]:
        """Record one hit for `key`. Returns (allowed, hits_in_window)."""
        r = await self._get_redis()
        if r is None:
            return True, 0

        now = time.time()
        redis_key = f"{self.prefix}:{key}"
        try:
            pipe = r.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - self.window)
            pipe.zadd(redis_key, {f"{now}:{uuid4().hex[:8]}": now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, self.window)
            results = await pipe.execute()
        except Exception as exc:
            logger.warning("Rate limiter Redis error: %s", exc)
            self._redis = None
            return True, 0

        count = results[2]
        return count <= self.limit, count


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self.limiter = SlidingWindowLimiter("ratelimit", settings.rate_limit_per_minute, 60)

    async def dispatch(self, request: Request, call_next):
        if not settings.rate_limit_enabled or request.url.path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        allowed, count = await self.limiter.hit(client_ip_of(request) or "unknown")
        if not allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={"Retry-After": str(self.limiter.window)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limiter.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.limiter.limit - count))
        return response


# Shared instance for the public intake form
public_intake_limiter = SlidingWindowLimiter("ratelimit:public", settings.public_intake_per_hour, 3600)
