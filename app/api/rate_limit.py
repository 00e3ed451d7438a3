import time
from typing import Callable, Dict, List, Optional

from fastapi import HTTPException
from starlette.requests import Request


def client_key(request: Request) -> str:
    """Client identity for rate limiting: first X-Forwarded-For hop, X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "anonymous"


class SimpleRateLimiter:
    """Sliding-window rate limiter; in-memory (per process), keyed by client.

    Clients with no request inside the window are swept once per window, so
    the table only holds clients seen recently.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Optional[Callable[[], float]] = None):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock or time.monotonic
        self.storage: Dict[str, List[float]] = {}  # client -> [timestamps]
        self._last_sweep = self.clock()

    def _sweep(self, now: float) -> None:
        stale = [key for key, stamps in self.storage.items() if not stamps or now - stamps[-1] >= self.window_seconds]
        for key in stale:
            del self.storage[key]
        self._last_sweep = now

    def check(self, request: Request) -> int:
        """Raise 429 if the client is over the limit; otherwise record the request and return the remaining quota."""
        now = self.clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        key = client_key(request)
        # Remove expired timestamps
        recent = [t for t in self.storage.get(key, ()) if now - t < self.window_seconds]

        if len(recent) >= self.max_requests:
            self.storage[key] = recent
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please retry later.",
                headers={
                    "X-RateLimit-Limit": str(self.max_requests),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(int(self.window_seconds)),
                },
            )

        recent.append(now)
        self.storage[key] = recent
        return self.max_requests - len(recent)
