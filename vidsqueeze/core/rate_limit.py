"""Per-client admission control for job creation.

Sliding-window limiter keyed by client address. Behind Cloudflare the real
address arrives in the ``cf-connecting-ip`` header.
"""

import math
import threading
import time
from collections import deque
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."


class RateLimitExceeded(HTTPException):
    """Exception raised when a client exceeds its request budget."""

    def __init__(self, retry_after: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=RATE_LIMIT_MESSAGE,
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class SlidingWindowLimiter:
    """Allow at most ``max_requests`` per ``window_seconds`` for each key.

    Idle keys are forgotten at most once per window, from the check path, so
    the table holds only clients seen in roughly the last two windows.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    def check(self, key: str) -> tuple[bool, Optional[int]]:
        """Record a hit for ``key`` if it is within budget.

        Returns: (is_allowed, retry_after_seconds)
        """
        now = self._clock()
        with self._lock:
            if now - self._last_prune >= self.window_seconds:
                self._prune(now)

            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = max(1, math.ceil(self.window_seconds - (now - hits[0])))
                return False, retry_after

            hits.append(now)
            return True, None

    def _prune(self, now: float) -> None:
        # Caller holds the lock
        stale = [
            key for key, hits in self._hits.items()
            if not hits or now - hits[-1] >= self.window_seconds
        ]
        for key in stale:
            del self._hits[key]
        self._last_prune = now


def client_key(request: Request) -> str:
    """Client address used for rate limiting."""
    forwarded = request.headers.get("cf-connecting-ip")
    if forwarded:
        return forwarded.strip()
    if request.client:
        return request.client.host
    return "anonymous"


async def enforce_transcode_rate_limit(request: Request) -> None:
    """Dependency applied to POST /api/transcode."""
    limiter: SlidingWindowLimiter = request.app.state.transcode_limiter
    is_allowed, retry_after = limiter.check(client_key(request))
    if not is_allowed:
        raise RateLimitExceeded(retry_after or 1)
