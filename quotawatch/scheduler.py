"""Scheduler loop: drives ticks and fans out per-account fetches.

One driver task wakes every second.  Each tick selects accounts that are
due and not paused, takes a per-account rate-limit permit, and starts one
fetch task per account (bounded by a semaphore, each with a timeout).
When a fetch finishes, its result goes through a per-account pipeline::

    SessionHealthTracker -> interval policy -> NotificationEngine
        -> HistoryStore -> EventBus

Each pipeline step is isolated: a failing step is logged and the rest
still run.  The pipeline is shielded from cancellation and serialized per
account, so ``stop()`` never leaves an account half-updated.

Sleep/wake: when the wall clock jumps more than ``WAKE_THRESHOLD_SECONDS``
between heartbeats, every non-paused account becomes due at once and a
``system-wake`` event is published.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from quotawatch.config import SchedulerConfig
from quotawatch.errors import (
    NETWORK,
    RATE_LIMITED,
    UNKNOWN,
    AccountNotFoundError,
    ProviderError,
)
from quotawatch.events import SCHEDULER_STATUS, SYSTEM_WAKE, USAGE_UPDATE, EventBus
from quotawatch.history import HistoryStore
from quotawatch.intervals import backoff_interval, next_interval
from quotawatch.models import (
    Account,
    Credentials,
    SchedulerStatus,
    SessionState,
    SystemWake,
    UsageSnapshot,
    UsageUpdate,
    to_unix_ms,
    utc_now,
)
from quotawatch.notifications import NotificationEngine
from quotawatch.providers import ProviderRegistry
from quotawatch.rate_limiter import GLOBAL_SCOPE, RateLimiter, account_scope
from quotawatch.session_health import SessionHealthTracker

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 1.0
WAKE_THRESHOLD_SECONDS = 30

CredentialsSource = Callable[[str], Optional[Credentials]]


class AccountEntry:
    """Scheduling state for one account."""

    def __init__(self, account: Account, next_due_at: float, interval: int):
        self.account = account
        self.next_due_at = next_due_at
        self.interval = interval
        self.last_attempt: Optional[float] = None
        self.rate_limit_streak = 0
        self.in_flight = False
        self.latest: Optional[UsageSnapshot] = None
        self.last_updated: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_error_kind: Optional[str] = None


class SchedulerLoop:
    """Owns the polling schedule and the per-account fetch pipeline."""

    def __init__(
        self,
        registry: ProviderRegistry,
        credentials_source: CredentialsSource,
        config: Optional[SchedulerConfig] = None,
        bus: Optional[EventBus] = None,
        tracker: Optional[SessionHealthTracker] = None,
        notifications: Optional[NotificationEngine] = None,
        history: Optional[HistoryStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        heartbeat: float = HEARTBEAT_SECONDS,
    ):
        self.registry = registry
        self._credentials_source = credentials_source
        self._config = config or SchedulerConfig()
        self.bus = bus or EventBus()
        self.tracker = tracker or SessionHealthTracker(
            self._config.pause_threshold, publish=self.bus.publish
        )
        self.notifications = notifications or NotificationEngine(publish=self.bus.publish)
        self.history = history
        self._clock = clock
        self._wall_clock = wall_clock
        self.rate_limiter = rate_limiter or RateLimiter(
            self._config.min_interval_seconds, clock=clock
        )
        self.heartbeat = heartbeat

        self._entries: dict[str, AccountEntry] = {}
        self._account_locks: dict[str, asyncio.Lock] = {}
        self._inflight: set[asyncio.Task] = set()
        self._pipelines: set[asyncio.Task] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_size = 0
        self._task: Optional[asyncio.Task] = None
        self._last_fetch: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def set_config(self, config: SchedulerConfig) -> SchedulerConfig:
        """Replace the scheduler config; due times follow on the next tick."""
        if not isinstance(config, SchedulerConfig):
            raise ValueError("config must be a SchedulerConfig")
        self._config = config
        self.rate_limiter.min_interval_seconds = config.min_interval_seconds
        self.tracker.pause_threshold = config.pause_threshold
        self._reschedule_all()
        logger.info(
            "Scheduler config updated: mode=%s interval=%ds min=%ds",
            config.mode,
            config.fixed_interval_seconds,
            config.min_interval_seconds,
        )
        self._publish_status()
        return config

    def set_interval(self, seconds: int) -> SchedulerConfig:
        """Set the fixed-mode interval, clamped to the minimum interval.

        Adaptive mode keeps the value for when fixed mode is selected.
        """
        if seconds <= 0:
            raise ValueError("Interval must be positive")
        clamped = max(int(seconds), self._config.min_interval_seconds)
        return self.set_config(self._config.updated(fixed_interval_seconds=clamped))

    def _reschedule_all(self) -> None:
        for entry in self._entries.values():
            if entry.last_attempt is None:
                continue
            base = next_interval(entry.latest, self._config)
            entry.interval = base
            entry.next_due_at = entry.last_attempt + backoff_interval(
                base, entry.rate_limit_streak, self._config
            )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def add_account(self, account: Account) -> None:
        """Start polling an account; it is due immediately."""
        self._entries[account.id] = AccountEntry(
            account, self._clock(), next_interval(None, self._config)
        )
        logger.debug("Scheduling account %s (%s)", account.id, account.provider_id)

    def update_account(self, account: Account) -> None:
        entry = self._get_entry(account.id)
        entry.account = account

    def remove_account(self, account_id: str) -> None:
        """Stop polling and clear all per-account state."""
        self._entries.pop(account_id, None)
        self._account_locks.pop(account_id, None)
        self.tracker.remove(account_id)
        self.notifications.clear_account(account_id)
        self.rate_limiter.forget(account_scope(account_id))
        logger.info("Removed account %s from scheduler", account_id)

    def accounts(self) -> list[Account]:
        return [entry.account for entry in self._entries.values()]

    def has_account(self, account_id: str) -> bool:
        return account_id in self._entries

    def _get_entry(self, account_id: str) -> AccountEntry:
        entry = self._entries.get(account_id)
        if entry is None:
            raise AccountNotFoundError(account_id)
        return entry

    def latest(self, account_id: str) -> Optional[UsageSnapshot]:
        return self._get_entry(account_id).latest

    def account_status(self, account_id: str) -> dict:
        """Latest snapshot + session validity for one account."""
        entry = self._get_entry(account_id)
        session = self.tracker.get(account_id)
        return {
            "id": entry.account.id,
            "name": entry.account.display_name,
            "provider": entry.account.provider_id,
            "limits": [
                limit.model_dump(by_alias=True, mode="json")
                for limit in (entry.latest.limits if entry.latest else ())
            ],
            "lastUpdated": entry.last_updated.isoformat() if entry.last_updated else None,
            "sessionValid": session.valid,
            "sessionStatus": session.status,
            "error": entry.last_error,
        }

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def get_session_status(self, account_id: str) -> SessionState:
        self._get_entry(account_id)
        return self.tracker.get(account_id)

    def resume(self, account_id: str) -> SessionState:
        """Force an account back to healthy and make it due immediately."""
        entry = self._get_entry(account_id)
        state = self.tracker.resume(account_id)
        self.notifications.on_session_ok(account_id)
        entry.rate_limit_streak = 0
        entry.next_due_at = self._clock()
        return state

    def save_credentials(self, account_id: str) -> SessionState:
        """Called after new credentials are stored for an account."""
        logger.info("Credentials updated for account %s", account_id)
        return self.resume(account_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduler started (%d accounts)", len(self._entries))
        self._publish_status()

    async def stop(self) -> None:
        """Cancel the driver and in-flight fetches; let pipelines finish."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for fetch in list(self._inflight):
            fetch.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._pipelines:
            await asyncio.gather(*self._pipelines, return_exceptions=True)
        logger.info("Scheduler stopped")
        self._publish_status()

    async def _run(self) -> None:
        while True:
            before = self._wall_clock()
            await asyncio.sleep(self.heartbeat)
            gap = self._wall_clock() - before - self.heartbeat
            if gap > WAKE_THRESHOLD_SECONDS:
                self._on_wake(gap)
            try:
                await self.tick(wait=False)
            except Exception as e:
                logger.exception("Scheduler tick failed: %s", e)

    def _on_wake(self, gap: float) -> None:
        logger.info("System wake detected (%.0fs gap), refreshing all accounts", gap)
        now = self._clock()
        for entry in self._entries.values():
            entry.next_due_at = min(entry.next_due_at, now)
        self.bus.publish(SYSTEM_WAKE, SystemWake(gap_secs=gap))

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def _due_entries(self, now: float) -> list[AccountEntry]:
        return [
            entry
            for account_id, entry in self._entries.items()
            if not entry.in_flight
            and entry.next_due_at <= now
            and not self.tracker.is_paused(account_id)
        ]

    async def tick(self, wait: bool = True) -> list[str]:
        """Run one scheduling pass.  Returns the account ids being fetched.

        With ``wait=True`` the call returns after every fetch (and its
        pipeline) finished; the driver uses ``wait=False`` so a slow
        provider never delays the next tick.
        """
        now = self._clock()
        granted: list[AccountEntry] = []
        for entry in self._due_entries(now):
            decision = self.rate_limiter.try_acquire(account_scope(entry.account.id))
            if decision.granted:
                granted.append(entry)
            else:
                entry.next_due_at = now + decision.retry_after
                logger.debug(
                    "Account %s deferred %.1fs by rate limiter",
                    entry.account.id,
                    decision.retry_after,
                )
        tasks = self._launch(granted)
        if wait and tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return [entry.account.id for entry in granted]

    async def force_refresh(self) -> dict:
        """Fetch every non-paused account now.

        Raises ``RateLimitedError`` when called again within the minimum
        interval.  Accounts that were fetched too recently, are paused, or
        are already being fetched are reported as skipped.
        """
        self.rate_limiter.acquire(GLOBAL_SCOPE)
        refreshed: list[AccountEntry] = []
        skipped: list[dict] = []
        for account_id, entry in self._entries.items():
            if self.tracker.is_paused(account_id):
                skipped.append({"accountId": account_id, "reason": "paused"})
            elif entry.in_flight:
                skipped.append({"accountId": account_id, "reason": "in_flight"})
            elif not self.rate_limiter.try_acquire(account_scope(account_id)).granted:
                skipped.append({"accountId": account_id, "reason": "rate_limited"})
            else:
                refreshed.append(entry)
        logger.info(
            "Force refresh: %d account(s), %d skipped", len(refreshed), len(skipped)
        )
        tasks = self._launch(refreshed)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return {
            "refreshed": [entry.account.id for entry in refreshed],
            "skipped": skipped,
        }

    def _launch(self, entries: list[AccountEntry]) -> list[asyncio.Task]:
        tasks = []
        for entry in entries:
            entry.in_flight = True
            task = asyncio.create_task(self._fetch_one(entry))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)
        return tasks

    def _get_semaphore(self) -> asyncio.Semaphore:
        size = self._config.max_concurrency
        if self._semaphore is None or self._semaphore_size != size:
            self._semaphore = asyncio.Semaphore(size)
            self._semaphore_size = size
        return self._semaphore

    def _get_account_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Fetch + pipeline
    # ------------------------------------------------------------------

    async def _fetch_one(self, entry: AccountEntry) -> None:
        account = entry.account
        snapshot: Optional[UsageSnapshot] = None
        error: Optional[ProviderError] = None
        try:
            async with self._get_semaphore():
                started = self._clock()
                entry.last_attempt = started
                try:
                    provider = self.registry.get(account.provider_id)
                    credentials = self._credentials_source(account.id)
                    if credentials is None:
                        raise ProviderError(
                            UNKNOWN, "No credentials saved", code="MISSING_CREDENTIALS"
                        )
                    snapshot = await asyncio.wait_for(
                        provider.fetch(credentials, account.id),
                        timeout=self._config.request_timeout,
                    )
                except asyncio.TimeoutError:
                    error = ProviderError(
                        NETWORK, f"Timed out after {self._config.request_timeout:.0f}s"
                    )
                except ProviderError as e:
                    error = e
                except Exception as e:
                    logger.warning("Unexpected fetch failure for %s: %s", account.id, e)
                    error = ProviderError(UNKNOWN, str(e) or type(e).__name__)

            pipeline = asyncio.ensure_future(self._apply(entry, started, snapshot, error))
            self._pipelines.add(pipeline)
            pipeline.add_done_callback(self._pipelines.discard)
            await asyncio.shield(pipeline)
        finally:
            entry.in_flight = False

    async def _apply(
        self,
        entry: AccountEntry,
        started: float,
        snapshot: Optional[UsageSnapshot],
        error: Optional[ProviderError],
    ) -> None:
        account_id = entry.account.id
        async with self._get_account_lock(account_id):
            if account_id not in self._entries:
                logger.debug("Dropping result for removed account %s", account_id)
                return
            if snapshot is not None:
                await self._apply_success(entry, started, snapshot)
            else:
                await self._apply_error(entry, started, error)

    def _step(self, name: str, account_id: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.warning("%s step failed for account %s: %s", name, account_id, e)
            return None

    async def _step_in_thread(self, name: str, account_id: str, fn, *args, **kwargs):
        """Like ``_step`` but off the event loop (notifier and SQLite I/O block)."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            logger.warning("%s step failed for account %s: %s", name, account_id, e)
            return None

    async def _apply_success(
        self, entry: AccountEntry, started: float, snapshot: UsageSnapshot
    ) -> None:
        account = entry.account
        multi = len(self._entries) > 1

        self._step("session", account.id, self.tracker.record_success, account.id)
        self._step("session", account.id, self.notifications.on_session_ok, account.id)

        previous_interval = entry.interval
        entry.interval = next_interval(snapshot, self._config)
        entry.rate_limit_streak = 0
        entry.next_due_at = started + entry.interval
        if entry.interval != previous_interval and self._config.mode == "adaptive":
            logger.info(
                "Adaptive interval for %s: %ds -> %ds (max utilization %.0f%%)",
                account.id,
                previous_interval,
                entry.interval,
                snapshot.max_utilization(),
            )
            self._step("status", account.id, self._publish_status)

        await self._step_in_thread(
            "notify",
            account.id,
            self.notifications.evaluate,
            snapshot,
            account_name=account.display_name,
            multi_account=multi,
        )

        if self.history is not None:
            await self._step_in_thread("history", account.id, self.history.append, snapshot)

        if entry.latest is None or snapshot.captured_at >= entry.latest.captured_at:
            entry.latest = snapshot
        entry.last_updated = utc_now()
        entry.last_error = None
        entry.last_error_kind = None
        self._last_fetch = entry.last_updated
        self._step(
            "publish",
            account.id,
            self.bus.publish,
            USAGE_UPDATE,
            UsageUpdate(account_id=account.id, provider_id=account.provider_id, data=snapshot),
        )

    async def _apply_error(
        self, entry: AccountEntry, started: float, error: ProviderError
    ) -> None:
        account = entry.account
        logger.info("Fetch failed for %s: %s (%s)", account.id, error.message, error.kind)

        self._step("session", account.id, self.tracker.record_error, account.id, error.kind, error.message)
        await self._step_in_thread(
            "notify",
            account.id,
            self.notifications.on_session_error,
            account.id,
            error.kind,
            account_name=account.display_name,
            multi_account=len(self._entries) > 1,
        )

        if error.kind == RATE_LIMITED:
            entry.rate_limit_streak += 1
        else:
            entry.rate_limit_streak = 0
        entry.next_due_at = started + backoff_interval(
            entry.interval, entry.rate_limit_streak, self._config
        )
        entry.last_error = error.message
        entry.last_error_kind = error.kind

        self._step(
            "publish",
            account.id,
            self.bus.publish,
            USAGE_UPDATE,
            UsageUpdate(
                account_id=account.id,
                provider_id=account.provider_id,
                error=error.message,
                error_kind=error.kind,
            ),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _current_interval(self) -> int:
        if self._config.mode == "fixed":
            return max(self._config.fixed_interval_seconds, self._config.min_interval_seconds)
        intervals = [
            entry.interval
            for account_id, entry in self._entries.items()
            if not self.tracker.is_paused(account_id)
        ]
        return min(intervals) if intervals else next_interval(None, self._config)

    def _next_refresh_secs(self) -> Optional[int]:
        now = self._clock()
        due = [
            entry.next_due_at
            for account_id, entry in self._entries.items()
            if not self.tracker.is_paused(account_id)
        ]
        if not self.running or not due:
            return None
        return max(0, int(min(due) - now))

    def get_status(self) -> dict:
        """``{running, interval_secs, last_fetch}`` with last_fetch in unix ms."""
        return {
            "running": self.running,
            "interval_secs": self._current_interval(),
            "last_fetch": to_unix_ms(self._last_fetch),
        }

    def _publish_status(self) -> None:
        self.bus.publish(
            SCHEDULER_STATUS,
            SchedulerStatus(
                running=self.running,
                interval_secs=self._current_interval(),
                next_refresh_secs=self._next_refresh_secs(),
            ),
        )
