"""
Fixed-window rate limiting.

Each client identifier gets a counter that resets once its window expires.
State lives in process memory, so limits are per API process.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW_SECONDS = 60


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds
    limit: int


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """
    In-memory fixed-window counter keyed by client identifier.

    Args:
        max_requests: Requests allowed per window
        window_seconds: Window length
        clock: Time source returning epoch seconds
    """

    def __init__(self, max_requests: int = DEFAULT_MAX_REQUESTS,
                 window_seconds: int = DEFAULT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str) -> RateLimitResult:
        """Count one request for `identifier` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or window.reset_at <= now:
                window = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[identifier] = window
            else:
                window.count += 1

            allowed = window.count <= self.max_requests
            return RateLimitResult(
                allowed=allowed,
                remaining=max(0, self.max_requests - window.count),
                reset_at=window.reset_at,
                limit=self.max_requests,
            )

    @staticmethod
    def headers(result: RateLimitResult) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
        }

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._windows.pop(identifier, None)

    def reset_all(self) -> None:
        with self._lock:
            self._windows.clear()

    def sweep_expired(self) -> int:
        """Remove expired windows; returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if window.reset_at <= now]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


def get_rate_limit_identifier(headers: Mapping[str, str]) -> str:
    """
    Pick the identity a request is counted against.

    Order: bearer token, x-agent-id, first x-forwarded-for hop, x-real-ip,
    then the shared "anonymous" bucket.
    """
    auth_header = headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        if token:
            return token

    agent_id = headers.get("x-agent-id")
    if agent_id:
        return agent_id

    forwarded_for: Optional[str] = headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return "anonymous"
