"""
Redis-backed sliding window rate limiter.

Tiers (per client IP):
  - routing: POST /api/trips/{id}/routes, which spends directions-provider quota
  - anon:    everything else

Without a Redis client every request passes through.
"""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from tripline.api.config import settings

ROUTES_SUFFIX = "/routes"
EXEMPT_PATHS = ("/health",)


def _get_rate_limit(method: str, path: str) -> tuple[int, str]:
    """Return (limit_per_min, tier_name) for the given request."""
    if method == "POST" and path.rstrip("/").endswith(ROUTES_SUFFIX):
        return settings.rate_limit_routing_per_min, "routing"
    return settings.rate_limit_anon_per_min, "anon"


def _get_client_key(request: Request) -> str:
    client_ip = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    return f"ip:{client_ip}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter backed by Redis sorted sets."""

    def __init__(self, app, redis_client=None):
        super().__init__(app)
        self.redis = redis_client

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXEMPT_PATHS or self.redis is None:
            return await call_next(request)

        limit, tier = _get_rate_limit(request.method, request.url.path)
        window_key = f"ratelimit:{tier}:{_get_client_key(request)}"

        now = time.time()
        window_start = now - 60.0

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(window_key, 0, window_start)
        pipe.zcard(window_key)
        pipe.zadd(window_key, {f"{now}:{id(request)}": now})
        pipe.expire(window_key, 120)
        results = await pipe.execute()

        current_count = results[1]

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, limit - current_count - 1)),
            "X-RateLimit-Reset": str(int(now + 60)),
        }

        if current_count >= limit:
            headers["Retry-After"] = "60"
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {
                        "code": "RATE_LIMITED",
                        "message": f"Rate limit exceeded. Max {limit} requests per minute for {tier} tier.",
                    },
                    "requestId": request.state.__dict__.get("request_id", ""),
                },
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
