"""Unit tests for the per-scope minimum-spacing rate limiter."""

import pytest

from quotawatch.errors import RateLimitedError
from quotawatch.rate_limiter import GLOBAL_SCOPE, RateLimiter, account_scope


def test_first_acquire_granted(clock):
    """A scope that was never granted is granted immediately.

    >>> RateLimiter(10).try_acquire("global").granted
    True
    """
    limiter = RateLimiter(10, clock=clock)
    decision = limiter.try_acquire(GLOBAL_SCOPE)
    assert decision.granted is True
    assert decision.retry_after == 0.0


def test_second_acquire_within_interval_denied(clock):
    """A second grant inside the window is refused with the remaining wait.

    >>> # Verified via unit test
    """
    limiter = RateLimiter(10, clock=clock)
    limiter.try_acquire(GLOBAL_SCOPE)
    clock.advance(4)
    decision = limiter.try_acquire(GLOBAL_SCOPE)
    assert decision.granted is False
    assert decision.retry_after == pytest.approx(6.0)


def test_denial_does_not_move_window(clock):
    """Rejected attempts leave the last-grant timestamp untouched.

    >>> # Verified via unit test
    """
    limiter = RateLimiter(10, clock=clock)
    limiter.try_acquire(GLOBAL_SCOPE)
    for _ in range(5):
        clock.advance(1)
        assert not limiter.try_acquire(GLOBAL_SCOPE).granted
    clock.advance(5)
    assert limiter.try_acquire(GLOBAL_SCOPE).granted


def test_scopes_are_independent(clock):
    """Account scopes do not share a window with the global scope.

    >>> account_scope("a1")
    'account:a1'
    """
    limiter = RateLimiter(10, clock=clock)
    assert limiter.try_acquire(GLOBAL_SCOPE).granted
    assert limiter.try_acquire(account_scope("a1")).granted
    assert limiter.try_acquire(account_scope("a2")).granted
    assert not limiter.try_acquire(account_scope("a1")).granted


def test_acquire_raises_rate_limited(clock):
    """acquire() raises RateLimitedError carrying retry_after and scope.

    >>> # Verified via unit test
    """
    limiter = RateLimiter(10, clock=clock)
    limiter.acquire(GLOBAL_SCOPE)
    clock.advance(3)
    with pytest.raises(RateLimitedError) as exc:
        limiter.acquire(GLOBAL_SCOPE)
    assert exc.value.retry_after == pytest.approx(7.0)
    assert exc.value.scope == GLOBAL_SCOPE


def test_retry_after_and_forget(clock):
    """retry_after reports the wait; forget() reopens the scope.

    >>> # Verified via unit test
    """
    limiter = RateLimiter(10, clock=clock)
    scope = account_scope("a1")
    assert limiter.retry_after(scope) == 0.0
    limiter.try_acquire(scope)
    clock.advance(2)
    assert limiter.retry_after(scope) == pytest.approx(8.0)
    limiter.forget(scope)
    assert limiter.retry_after(scope) == 0.0
    assert limiter.try_acquire(scope).granted


def test_min_interval_must_be_positive():
    """Zero or negative spacing is rejected, also through the setter.

    >>> # Verified via unit test
    """
    with pytest.raises(ValueError):
        RateLimiter(0)
    limiter = RateLimiter(10)
    with pytest.raises(ValueError):
        limiter.min_interval_seconds = -1
    limiter.min_interval_seconds = 30
    assert limiter.min_interval_seconds == 30.0
