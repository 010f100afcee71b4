import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from .config import RateLimitSettings

logger = logging.getLogger(__name__)

_CLEANUP_INTERVAL_S = 60.0


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    status: int = 200
    message: str | None = None
    code: str | None = None
    retry_after: int | None = None
    reset_at: float | None = None


ALLOWED = GateDecision(allowed=True)


@dataclass
class _WindowEntry:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Per-client request counter over fixed windows.

    State is local to the process; entries whose window has passed are pruned
    at most once per cleanup interval.
    """

    def __init__(self, max_requests: int, window_s: float, *, clock: Callable[[], float] = time.time):
        self.max_requests = max(1, max_requests)
        self.window_s = window_s
        self._clock = clock
        self._entries: dict[str, _WindowEntry] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < _CLEANUP_INTERVAL_S:
            return
        self._last_cleanup = now
        expired = [key for key, entry in self._entries.items() if entry.reset_at < now]
        for key in expired:
            self._entries.pop(key, None)

    def check(self, identifier: str) -> tuple[bool, int, float]:
        """Count one request; return ``(allowed, remaining, reset_at)``."""
        with self._lock:
            now = self._clock()
            self._cleanup(now)
            entry = self._entries.get(identifier)
            if entry is None or entry.reset_at < now:
                entry = _WindowEntry(count=1, reset_at=now + self.window_s)
                self._entries[identifier] = entry
                return True, self.max_requests - 1, entry.reset_at
            entry.count += 1
            if entry.count > self.max_requests:
                return False, 0, entry.reset_at
            return True, self.max_requests - entry.count, entry.reset_at

    def __len__(self) -> int:
        return len(self._entries)


def client_identifier(headers: Mapping[str, str], user_id: str | None = None) -> str:
    if user_id:
        return f"user:{user_id}"
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return f"ip:{real_ip.strip()}"
    return "ip:unknown"


class AccessGate:
    def __init__(
        self,
        *,
        api_keys: frozenset[str],
        api_key_header: str,
        rate_limit: RateLimitSettings | None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api_keys = api_keys
        self.api_key_header = api_key_header
        self._clock = clock
        self.limiter = (
            FixedWindowRateLimiter(rate_limit.max_requests, rate_limit.window_s, clock=clock)
            if rate_limit is not None
            else None
        )

    def check_api_key(self, headers: Mapping[str, str]) -> GateDecision:
        if not self.api_keys:
            logger.warning("API key protection disabled: CHATGW_INBOUND_API_KEYS is not set")
            return ALLOWED
        candidate = headers.get(self.api_key_header)
        if candidate is None:
            auth_header = headers.get("authorization")
            if auth_header and auth_header.startswith("Bearer "):
                candidate = auth_header[7:]
        if candidate and candidate in self.api_keys:
            return ALLOWED
        return GateDecision(
            allowed=False,
            status=401,
            message="missing or invalid api key",
            code="invalid_api_key",
        )

    def check(self, headers: Mapping[str, str]) -> GateDecision:
        decision = self.check_api_key(headers)
        if not decision.allowed or self.limiter is None:
            return decision
        allowed, _remaining, reset_at = self.limiter.check(client_identifier(headers))
        if allowed:
            return ALLOWED
        retry_after = max(math.ceil(reset_at - self._clock()), 0)
        return GateDecision(
            allowed=False,
            status=429,
            message="Too many requests. Please try again in a moment.",
            code="rate_limit",
            retry_after=retry_after,
            reset_at=reset_at,
        )
