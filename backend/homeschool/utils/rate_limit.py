"""Per-client request throttling for login and AI endpoints."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque

from fastapi import HTTPException, Request

from ..config import settings


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by an arbitrary string.

    State lives in process memory, so limits are per worker.
    """

    def __init__(self, window_seconds: int = 60):
        self.window_seconds = window_seconds
        self._hits: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, max_requests: int) -> tuple[bool, int]:
        """Record a hit for `key`; return (allowed, retry_after_seconds)."""
        if max_requests <= 0:
            return True, 0
        now = time.monotonic()
        with self._lock:
            hits = self._hits[key]
            cutoff = now - self.window_seconds
            while hits and hits[0] < cutoff:
                hits.popleft()
            if len(hits) >= max_requests:
                return False, max(1, int(self.window_seconds - (now - hits[0])))
            hits.append(now)
        return True, 0

    def check(self, request: Request, scope: str, max_requests: int) -> None:
        """Raise HTTP 429 when the calling client exceeded `max_requests`."""
        allowed, retry_after = self.allow(f"{scope}:{client_key(request)}", max_requests)
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail="too many requests, try again later",
                headers={"Retry-After": str(retry_after)},
            )

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def client_key(request: Request) -> str:
    """The peer address; `X-Forwarded-For` only counts behind a trusted proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and settings.TRUST_PROXY:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = InMemoryRateLimiter()
