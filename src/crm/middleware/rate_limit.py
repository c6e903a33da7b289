"""Rate limiting middleware — fixed one-minute window per client IP.

Keys look like "crm:rl:{ip}:{minute}" and expire after two minutes.
/health is never limited so load balancer probes can't lock anyone out.

Redis is optional: without a connection (tests, local dev) every
request passes and no X-RateLimit headers are sent.
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from crm.redis_pool import get_redis

logger = structlog.get_logger()

EXEMPT_PATHS = ("/health",)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-backed request budget per IP per minute."""

    def __init__(self, app, rpm: int = 120):
        super().__init__(app)
        self.rpm = rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        try:
            redis = get_redis()
        except RuntimeError:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        key = f"crm:rl:{client_ip}:{int(time.time() // 60)}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)
        except Exception as e:
            logger.warning("rate_limit.redis_error", error=str(e))
            return await call_next(request)

        if count > self.rpm:
            logger.info("rate_limit.exceeded", client_ip=client_ip, count=count)
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.rpm - count))
        return response
