"""
Simple rate limiter middleware (in-memory).

- Not suitable for multi-instance production; put the limit at the gateway there.
- Long-lived streaming endpoints are exempt (one request per connection).
- Usage: app.add_middleware(RateLimiterMiddleware, calls=120, per_seconds=60)
"""
import time
import asyncio
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
from fastapi.responses import JSONResponse

from core.response import error

class RateLimiterMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, calls: int = 60, per_seconds: int = 60, exempt_prefixes: tuple[str, ...] = ("/api/rt/",)):
        super().__init__(app)
        self.calls = calls
        self.per_seconds = per_seconds
        self.exempt_prefixes = exempt_prefixes
        self._buckets = {}  # key -> [timestamps]
        self._lock = asyncio.Lock()

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(self.exempt_prefixes):
            return await call_next(request)

        client = request.client.host if request.client else "anon"
        key = f"ip:{client}"

        now = time.time()
        async with self._lock:
            window_start = now - self.per_seconds
            timestamps = [ts for ts in self._buckets.get(key, []) if ts > window_start]
            if len(timestamps) >= self.calls:
                retry_after = int(timestamps[0] + self.per_seconds - now) if timestamps else self.per_seconds
                return JSONResponse(
                    status_code=429,
                    content=error("rate_limited", f"Rate limit exceeded. Retry after {retry_after} seconds"),
                    headers={"Retry-After": str(retry_after)},
                )
            timestamps.append(now)
            self._buckets[key] = timestamps
        return await call_next(request)
