"""Unit tests for SchedulerLoop.

Scenarios use a fake monotonic clock and ``await scheduler.tick()`` so
every fetch and its pipeline completes before assertions run.  Each test
runs its whole scenario inside one event loop.
"""

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from quotawatch.config import SchedulerConfig
from quotawatch.errors import (
    BLOCKED,
    RATE_LIMITED,
    SESSION_EXPIRED,
    AccountNotFoundError,
    ProviderError,
    RateLimitedError,
)
from quotawatch.events import SCHEDULER_STATUS, SESSION_STATUS, SYSTEM_WAKE, USAGE_UPDATE
from quotawatch.history import HistoryStore
from quotawatch.models import Account, Credentials
from quotawatch.scheduler import SchedulerLoop


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _account(account_id: str, name: str = "") -> Account:
    return Account(id=account_id, provider_id="fake", display_name=name or account_id.upper())


def _credentials(account_id: str) -> Credentials:
    return Credentials(access_token="tok")


def _scheduler(registry, clock, *account_ids, config=None, **kwargs) -> SchedulerLoop:
    scheduler = SchedulerLoop(
        registry,
        _credentials,
        config=config or SchedulerConfig(mode="fixed"),
        clock=clock,
        **kwargs,
    )
    for account_id in account_ids:
        scheduler.add_account(_account(account_id))
    return scheduler


def _record(bus, topic):
    events = []
    bus.add_listener(events.append, [topic])
    return events


# ------------------------------------------------------------------
# Ticks
# ------------------------------------------------------------------


def test_new_account_fetched_on_first_tick(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    updates = _record(scheduler.bus, USAGE_UPDATE)
    fake_provider.utilization["a"] = 42

    fetched = _run(scheduler.tick())

    assert fetched == ["a"]
    assert scheduler.latest("a").max_utilization() == 42
    assert updates[-1].payload["data"]["limits"][0]["utilization"] == 42
    assert scheduler.account_status("a")["sessionValid"] is True


def test_account_not_refetched_before_interval(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")

    async def scenario():
        assert await scheduler.tick() == ["a"]
        clock.advance(299)
        assert await scheduler.tick() == []
        clock.advance(1)
        assert await scheduler.tick() == ["a"]

    _run(scenario())
    assert fake_provider.calls == ["a", "a"]


def test_failing_account_pauses_without_affecting_others(registry, fake_provider, clock):
    """One account with an expired session pauses after three ticks; the
    other two keep being fetched every tick.

    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a", "b", "c")
    statuses = _record(scheduler.bus, SESSION_STATUS)
    fake_provider.errors["a"] = ProviderError(SESSION_EXPIRED, "HTTP 401", status_code=401)

    async def scenario():
        rounds = []
        for _ in range(4):
            rounds.append(sorted(await scheduler.tick()))
            clock.advance(300)
        return rounds

    rounds = _run(scenario())

    assert rounds == [["a", "b", "c"]] * 3 + [["b", "c"]]
    assert fake_provider.calls.count("a") == 3
    assert fake_provider.calls.count("b") == 4
    assert fake_provider.calls.count("c") == 4

    session = scheduler.get_session_status("a")
    assert session.paused is True
    assert session.consecutive_errors == 3
    assert scheduler.get_session_status("b").valid is True

    last = [e for e in statuses if e.payload["accountId"] == "a"][-1]
    assert last.payload == {"accountId": "a", "valid": False, "errorCount": 3, "paused": True}


def test_resume_makes_account_due_immediately(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(
        registry, clock, "a", config=SchedulerConfig(mode="fixed", pause_threshold=1)
    )
    fake_provider.errors["a"] = ProviderError(SESSION_EXPIRED)

    async def scenario():
        await scheduler.tick()
        assert scheduler.tracker.is_paused("a")
        clock.advance(20)
        assert await scheduler.tick() == []
        del fake_provider.errors["a"]
        scheduler.resume("a")
        return await scheduler.tick()

    assert _run(scenario()) == ["a"]
    assert scheduler.get_session_status("a").status == "healthy"


def test_blocked_errors_never_pause(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    fake_provider.errors["a"] = ProviderError(BLOCKED, "HTTP 403", status_code=403)

    async def scenario():
        for _ in range(5):
            assert await scheduler.tick() == ["a"]
            clock.advance(300)

    _run(scenario())
    assert scheduler.get_session_status("a").paused is False
    assert scheduler.account_status("a")["error"] == "HTTP 403"


def test_rate_limited_error_backs_off(registry, fake_provider, clock):
    """Provider throttling doubles the next delay without counting as an error.

    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    fake_provider.errors["a"] = ProviderError(RATE_LIMITED, "HTTP 429", status_code=429)

    async def scenario():
        assert await scheduler.tick() == ["a"]
        clock.advance(300)
        assert await scheduler.tick() == []
        clock.advance(300)
        assert await scheduler.tick() == ["a"]

    _run(scenario())
    assert scheduler.get_session_status("a").consecutive_errors == 0


def test_adaptive_interval_follows_utilization(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a", config=SchedulerConfig(mode="adaptive"))
    statuses = _record(scheduler.bus, SCHEDULER_STATUS)
    fake_provider.utilization["a"] = 95

    async def scenario():
        await scheduler.tick()
        clock.advance(59)
        assert await scheduler.tick() == []
        clock.advance(1)
        assert await scheduler.tick() == ["a"]

    _run(scenario())
    assert scheduler.get_status()["interval_secs"] == 60
    assert statuses and statuses[-1].payload["intervalSecs"] == 60


def test_fetch_timeout_classified_as_network(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(
        registry, clock, "a", config=SchedulerConfig(mode="fixed", request_timeout=0.05)
    )
    fake_provider.delay = 1.0

    _run(scheduler.tick())

    session = scheduler.get_session_status("a")
    assert session.last_error_kind == "network"
    assert session.consecutive_errors == 1


def test_missing_credentials_counts_as_error(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = SchedulerLoop(registry, lambda account_id: None, clock=clock)
    scheduler.add_account(_account("a"))

    _run(scheduler.tick())

    assert fake_provider.calls == []
    assert scheduler.get_session_status("a").consecutive_errors == 1
    assert scheduler.account_status("a")["error"] == "No credentials saved"


def test_history_failure_does_not_block_pipeline(registry, fake_provider, clock):
    """A failing history write is logged; latest + events still update.

    >>> # Verified via unit test
    """
    history = MagicMock()
    history.append.side_effect = RuntimeError("disk full")
    scheduler = _scheduler(registry, clock, "a", history=history)
    updates = _record(scheduler.bus, USAGE_UPDATE)

    _run(scheduler.tick())

    history.append.assert_called_once()
    assert scheduler.latest("a") is not None
    assert len(updates) == 1


def test_snapshots_written_to_history(registry, db, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a", "b", history=HistoryStore(db))
    _run(scheduler.tick())
    result = scheduler.history.query()
    assert result["total"] == 2
    assert {e["account_id"] for e in result["entries"]} == {"a", "b"}


def test_threshold_notification_through_pipeline(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    notifier = MagicMock()
    scheduler.notifications.notifier = notifier
    fake_provider.utilization["a"] = 92

    _run(scheduler.tick())

    notifier.send.assert_called_once()
    title, body = notifier.send.call_args[0]
    assert title == "90% Usage Alert"


def test_slow_notifier_does_not_stall_event_loop(registry, fake_provider, clock):
    """A notifier that blocks for a while runs off the loop.

    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    notifier = MagicMock()
    notifier.send.side_effect = lambda title, body: time.sleep(0.6)
    scheduler.notifications.notifier = notifier
    fake_provider.utilization["a"] = 95

    async def scenario():
        gaps = []

        async def heartbeat():
            last = time.monotonic()
            while True:
                await asyncio.sleep(0.02)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        beat = asyncio.ensure_future(heartbeat())
        await scheduler.tick()
        beat.cancel()
        try:
            await beat
        except asyncio.CancelledError:
            pass
        return gaps

    gaps = _run(scenario())
    notifier.send.assert_called_once()
    assert len(gaps) > 5
    assert max(gaps) < 0.3


# ------------------------------------------------------------------
# Manual refresh
# ------------------------------------------------------------------


def test_force_refresh_rate_limited(registry, fake_provider, clock):
    """Second refresh inside the minimum interval is refused; after the
    interval it succeeds.

    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")

    async def scenario():
        first = await scheduler.force_refresh()
        with pytest.raises(RateLimitedError) as exc:
            await scheduler.force_refresh()
        clock.advance(10)
        third = await scheduler.force_refresh()
        return first, exc.value, third

    first, error, third = _run(scenario())
    assert first == {"refreshed": ["a"], "skipped": []}
    assert error.retry_after == pytest.approx(10.0)
    assert third["refreshed"] == ["a"]
    assert fake_provider.calls == ["a", "a"]


def test_force_refresh_skips_paused_and_recent(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(
        registry, clock, "a", "b", config=SchedulerConfig(mode="fixed", pause_threshold=1)
    )
    fake_provider.errors["a"] = ProviderError(SESSION_EXPIRED)

    async def scenario():
        await scheduler.tick()
        clock.advance(5)
        scheduler.add_account(_account("c"))
        return await scheduler.force_refresh()

    result = _run(scenario())
    assert result["refreshed"] == ["c"]
    assert {"accountId": "a", "reason": "paused"} in result["skipped"]
    assert {"accountId": "b", "reason": "rate_limited"} in result["skipped"]


# ------------------------------------------------------------------
# Configuration + accounts
# ------------------------------------------------------------------


def test_set_interval_clamps_to_minimum(registry, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    config = scheduler.set_interval(3)
    assert config.fixed_interval_seconds == 10
    assert scheduler.get_status()["interval_secs"] == 10
    with pytest.raises(ValueError):
        scheduler.set_interval(0)


def test_set_interval_reschedules_fetched_accounts(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")

    async def scenario():
        await scheduler.tick()
        scheduler.set_interval(60)
        clock.advance(60)
        return await scheduler.tick()

    assert _run(scenario()) == ["a"]


def test_set_config_updates_rate_limiter(registry, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock)
    scheduler.set_config(SchedulerConfig(mode="fixed", min_interval_seconds=30, pause_threshold=5))
    assert scheduler.rate_limiter.min_interval_seconds == 30
    assert scheduler.tracker.pause_threshold == 5
    with pytest.raises(ValueError):
        scheduler.set_config({"mode": "fixed"})


def test_pause_threshold_comes_from_config(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(
        registry, clock, "a", config=SchedulerConfig(mode="fixed", pause_threshold=2)
    )
    fake_provider.errors["a"] = ProviderError(SESSION_EXPIRED, "HTTP 401", status_code=401)

    async def scenario():
        for _ in range(2):
            await scheduler.tick()
            clock.advance(300)
        return await scheduler.tick()

    assert _run(scenario()) == []
    assert scheduler.get_session_status("a").paused is True


def test_remove_account_clears_state(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    fake_provider.utilization["a"] = 80
    _run(scheduler.tick())
    assert scheduler.notifications.get_state("a", "five_hour") is not None

    scheduler.remove_account("a")

    assert not scheduler.has_account("a")
    assert scheduler.notifications.get_state("a", "five_hour") is None
    assert scheduler.tracker.all() == {}
    assert scheduler.rate_limiter.retry_after("account:a") == 0.0
    with pytest.raises(AccountNotFoundError):
        scheduler.latest("a")


def test_unknown_account_raises(registry, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock)
    with pytest.raises(AccountNotFoundError):
        scheduler.resume("ghost")
    with pytest.raises(AccountNotFoundError):
        scheduler.account_status("ghost")


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


def test_wake_makes_accounts_due(registry, fake_provider, clock):
    """
    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a")
    wakes = _record(scheduler.bus, SYSTEM_WAKE)

    async def scenario():
        await scheduler.tick()
        clock.advance(15)
        scheduler._on_wake(3600)
        return await scheduler.tick()

    assert _run(scenario()) == ["a"]
    assert wakes[0].payload == {"gapSecs": 3600.0}


def test_start_and_stop(registry, fake_provider, clock):
    """The driver ticks on its heartbeat and stops cleanly.

    >>> # Verified via unit test
    """
    scheduler = _scheduler(registry, clock, "a", heartbeat=0.01)

    async def scenario():
        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.1)
        await scheduler.stop()
        return scheduler.running

    assert _run(scenario()) is False
    assert fake_provider.calls == ["a"]
    assert scheduler.get_status()["last_fetch"] is not None
