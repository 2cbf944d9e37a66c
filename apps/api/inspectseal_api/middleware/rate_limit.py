"""Rate limiting for the public verify endpoint."""

import logging
import time
from typing import Optional

import redis
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from inspectseal_api.settings import get_settings
from inspectseal_api.utils.metrics import rate_limit_backend_error

logger = logging.getLogger(__name__)
settings = get_settings()

VERIFY_PATH_PREFIX = "/v1/verify/"
WINDOW_SECONDS = 60


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limit per client IP, backed by Redis.

    Only verify requests are limited. If Redis is unreachable the request is
    let through and the failure is counted.
    """

    def __init__(self, app, redis_client: Optional[redis.Redis] = None, limit: Optional[int] = None):
        super().__init__(app)
        self._redis = redis_client
        self.limit = limit or settings.verify_rate_limit_per_minute

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url, decode_responses=True)
        return self._redis

    async def dispatch(self, request: Request, call_next):
        """Apply rate limiting."""
        if not settings.rate_limit_enabled or not request.url.path.startswith(VERIFY_PATH_PREFIX):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time() // WINDOW_SECONDS)
        key = f"rate_limit:verify:{client_ip}:{window}"

        try:
            pipe = self.redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, WINDOW_SECONDS)
            count = int(pipe.execute()[0])
        except redis.RedisError as e:
            rate_limit_backend_error.inc()
            logger.warning(f"Rate limiter backend unavailable, allowing request: {e}")
            return await call_next(request)

        retry_after = str(WINDOW_SECONDS - int(time.time()) % WINDOW_SECONDS)
        if count > self.limit:
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded. Please try again later."},
                headers={"Retry-After": retry_after, "Cache-Control": "no-store"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.limit - count))
        return response
