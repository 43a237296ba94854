"""
Per-client request rate limiting.

One RateLimiter instance is shared by the whole process. It keeps a sliding
window of request timestamps per client IP; idle clients are evicted
periodically and reset() clears everything (used by tests and admin tooling).

Environment:
  - RATE_LIMIT_RPM: requests allowed per window per client (default 100, 0 disables)
  - RATE_LIMIT_WINDOW_SECONDS: window length (default 900, i.e. 15 minutes)
  - TRUST_FORWARDED_FOR: key clients on X-Forwarded-For (default off; enable only
    behind a proxy that sets the header)
"""
import logging
import os
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/", "/docs", "/openapi.json", "/redoc"})


class RateLimiter:
    """Sliding-window counter keyed by client id. Thread-safe."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._clients: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def allow(self, client_id: str) -> Tuple[bool, int]:
        """Record a request; return (allowed, remaining)."""
        if not self.enabled:
            return True, 0

        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            timestamps = self._clients[client_id]
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= self.max_requests:
                return False, 0
            timestamps.append(now)
            return True, self.max_requests - len(timestamps)

    def evict_idle(self) -> int:
        """Drop clients without requests inside the window; return how many."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            idle = [k for k, v in self._clients.items() if not v or v[-1] <= cutoff]
            for k in idle:
                del self._clients[k]
        return len(idle)

    def reset(self) -> None:
        """Forget every client."""
        with self._lock:
            self._clients.clear()

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._clients)


_LIMITER: Optional[RateLimiter] = None


# PUBLIC_INTERFACE
def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter, creating it from the environment."""
    global _LIMITER
    if _LIMITER is None:
        _LIMITER = RateLimiter(
            max_requests=int(os.getenv("RATE_LIMIT_RPM", "100")),
            window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900")),
        )
    return _LIMITER


def _trust_forwarded_for() -> bool:
    return os.getenv("TRUST_FORWARDED_FOR", "").lower() in ("1", "true", "yes")


def _client_ip(request: Request, trust_forwarded_for: bool) -> str:
    forwarded = request.headers.get("x-forwarded-for") if trust_forwarded_for else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests over the limit with 429."""

    EVICT_EVERY = 500

    def __init__(
        self,
        app: ASGIApp,
        limiter: Optional[RateLimiter] = None,
        trust_forwarded_for: Optional[bool] = None,
    ) -> None:
        super().__init__(app)
        self._limiter = limiter
        if trust_forwarded_for is None:
            trust_forwarded_for = _trust_forwarded_for()
        self._trust_forwarded_for = trust_forwarded_for
        self._since_eviction = 0

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter or get_rate_limiter()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        limiter = self.limiter
        if not limiter.enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client = _client_ip(request, self._trust_forwarded_for)
        allowed, remaining = limiter.allow(client)
        if not allowed:
            logger.warning("Rate limit exceeded client=%s path=%s", client, request.url.path)
            return JSONResponse(
                {"detail": "Too many requests, please try again later."},
                status_code=429,
                headers={"Retry-After": str(int(limiter.window_seconds))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)

        self._since_eviction += 1
        if self._since_eviction >= self.EVICT_EVERY:
            self._since_eviction = 0
            evicted = limiter.evict_idle()
            if evicted:
                logger.debug("Evicted %s idle rate-limit clients", evicted)
        return response
