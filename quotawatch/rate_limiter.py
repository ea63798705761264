"""Minimum-spacing rate limiter for fetch attempts.

One last-grant timestamp per scope: ``global`` guards manual refreshes,
``account:<id>`` guards every fetch of one account.  A grant updates the
timestamp; a rejection leaves it untouched and reports how long to wait.

The internal lock only guards the timestamp map and is never held across
network I/O.

>>> now = [1000.0]
>>> limiter = RateLimiter(10, clock=lambda: now[0])
>>> limiter.try_acquire(GLOBAL_SCOPE).granted
True
>>> limiter.try_acquire(GLOBAL_SCOPE)
RateLimitDecision(granted=False, retry_after=10.0)
>>> now[0] += 10
>>> limiter.try_acquire(GLOBAL_SCOPE).granted
True
"""

import threading
import time
from typing import Callable, NamedTuple, Optional

from quotawatch.config import MIN_INTERVAL_SECONDS
from quotawatch.errors import RateLimitedError

GLOBAL_SCOPE = "global"


def account_scope(account_id: str) -> str:
    """Scope key for one account.

    >>> account_scope("abc")
    'account:abc'
    """
    return f"account:{account_id}"


class RateLimitDecision(NamedTuple):
    granted: bool
    retry_after: float = 0.0


class RateLimiter:
    """Per-scope minimum spacing between grants."""

    def __init__(
        self,
        min_interval_seconds: float = MIN_INTERVAL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        if min_interval_seconds <= 0:
            raise ValueError("min_interval_seconds must be positive")
        self._min_interval = float(min_interval_seconds)
        self._clock = clock or time.monotonic
        self._last_grant: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def min_interval_seconds(self) -> float:
        return self._min_interval

    @min_interval_seconds.setter
    def min_interval_seconds(self, value: float) -> None:
        if value <= 0:
            raise ValueError("min_interval_seconds must be positive")
        self._min_interval = float(value)

    def try_acquire(self, scope: str) -> RateLimitDecision:
        """Grant *scope* if its last grant is at least the minimum interval old."""
        with self._lock:
            now = self._clock()
            last = self._last_grant.get(scope)
            if last is not None:
                elapsed = now - last
                if elapsed < self._min_interval:
                    return RateLimitDecision(False, self._min_interval - elapsed)
            self._last_grant[scope] = now
            return RateLimitDecision(True, 0.0)

    def acquire(self, scope: str) -> None:
        """Hard variant of :meth:`try_acquire`; raises ``RateLimitedError``.

        >>> limiter = RateLimiter(10, clock=lambda: 0.0)
        >>> limiter.acquire("global")
        >>> limiter.acquire("global")
        Traceback (most recent call last):
        ...
        quotawatch.errors.RateLimitedError: Rate limited: retry after 10.0s (global)
        """
        decision = self.try_acquire(scope)
        if not decision.granted:
            raise RateLimitedError(decision.retry_after, scope=scope)

    def retry_after(self, scope: str) -> float:
        """Seconds until *scope* could be granted again (0.0 when it can now)."""
        with self._lock:
            last = self._last_grant.get(scope)
            if last is None:
                return 0.0
            return max(0.0, self._min_interval - (self._clock() - last))

    def forget(self, scope: str) -> None:
        """Drop a scope, e.g. when its account is deleted."""
        with self._lock:
            self._last_grant.pop(scope, None)
