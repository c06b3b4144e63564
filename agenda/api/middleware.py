"""HTTP middleware: per-client fixed-window rate limiting."""

from __future__ import annotations

import math
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from agenda.errors import RateLimited
from agenda.logging_config import get_logger

logger = get_logger(__name__)


class FixedWindowLimiter:
    """Counts requests per key in fixed windows of ``window_seconds``."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str) -> Optional[float]:
        """Record a request. Returns seconds until reset if over the limit, else None."""
        now = self._clock()
        start, count = self._windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0
        count += 1
        self._windows[key] = (start, count)
        if len(self._windows) > 10_000:
            self._prune(now)
        if count > self.max_requests:
            return max(0.0, self.window_seconds - (now - start))
        return None

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects clients that exceed the request budget on ``/api/`` routes."""

    def __init__(self, app, limiter: FixedWindowLimiter, prefix: str = "/api/") -> None:
        super().__init__(app)
        self.limiter = limiter
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.prefix):
            return await call_next(request)
        client = request.client.host if request.client else "unknown"
        retry_after = self.limiter.hit(client)
        if retry_after is not None:
            logger.warning("rate_limited", client=client, path=request.url.path)
            error = RateLimited("Too many requests, please try again later.")
            return JSONResponse(
                status_code=error.status_code,
                content={"error": error.code, "detail": error.message},
                headers={"Retry-After": str(math.ceil(retry_after))},
            )
        return await call_next(request)
