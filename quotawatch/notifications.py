"""Edge-triggered usage notifications with reset detection and DND.

For every limit of a fresh snapshot the engine compares the new
utilization with what it saw last time for the same (account, limit):

- threshold crossing: highest threshold ``t`` with ``previous < t <= current``
  fires once, if ``t`` is above the last notified threshold
- re-arm: when utilization falls below the last notified threshold, that
  marker snaps down to the highest threshold still ``<= current``
- reset: a drop of at least ``reset_drop_threshold`` points clears the
  marker and announces the reset
- upcoming reset: one warning per reset window when the window ends within
  the configured horizon and utilization is above the floor

Notifications inside the Do-Not-Disturb window (or while notifications are
disabled) are still computed, returned with ``suppressed=True`` and update
state, so a crossing that happened during the night is not announced the
next morning.
"""

import json
import logging
import platform
import shutil
import subprocess
import threading
from datetime import datetime, time as dt_time
from typing import Callable, Optional, Union

from quotawatch.config import NotificationSettings
from quotawatch.errors import SESSION_EXPIRED
from quotawatch.events import USAGE_RESET
from quotawatch.models import (
    Notification,
    NotificationState,
    UsageLimit,
    UsageReset,
    UsageSnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

# resets_at jitter treated as the same reset window
RESETS_AT_TOLERANCE_SECONDS = 60

SESSION_EXPIRED_BODY = (
    "Your Claude session may be expiring soon. Please refresh your credentials."
)


# ---------------------------------------------------------------------------
# Do Not Disturb
# ---------------------------------------------------------------------------


def _parse_hhmm(value: str) -> dt_time:
    hours, minutes = value.split(":")
    return dt_time(int(hours), int(minutes))


def in_dnd_window(start: str, end: str, now: Union[dt_time, datetime]) -> bool:
    """Whether local time *now* falls in ``[start, end)``.

    ``start > end`` means the window wraps midnight.

    >>> in_dnd_window("22:00", "08:00", dt_time(23, 30))
    True
    >>> in_dnd_window("22:00", "08:00", dt_time(9, 0))
    False
    >>> in_dnd_window("22:00", "08:00", dt_time(8, 0))
    False
    >>> in_dnd_window("12:00", "13:00", dt_time(12, 30))
    True
    >>> in_dnd_window("12:00", "12:00", dt_time(12, 0))
    False
    """
    if isinstance(now, datetime):
        now = now.time()
    current = dt_time(now.hour, now.minute)
    start_t = _parse_hhmm(start)
    end_t = _parse_hhmm(end)
    if start_t > end_t:
        return current >= start_t or current < end_t
    return start_t <= current < end_t


def is_dnd_active(settings: NotificationSettings, now: Union[dt_time, datetime]) -> bool:
    return settings.dnd_enabled and in_dnd_window(
        settings.dnd_start_time, settings.dnd_end_time, now
    )


# ---------------------------------------------------------------------------
# OS notifiers
# ---------------------------------------------------------------------------


class Notifier:
    """Delivers a notification to the user.  Returns True when delivered."""

    def send(self, title: str, body: str) -> bool:
        raise NotImplementedError


def _notification_command(title: str, body: str) -> Optional[list[str]]:
    """Build the platform notification command, or None if unsupported."""
    system = platform.system()
    if system == "Darwin":
        script = f"display notification {json.dumps(body)} with title {json.dumps(title)}"
        return ["osascript", "-e", script]
    if system == "Linux":
        if shutil.which("notify-send"):
            return ["notify-send", "--app-name=quotawatch", title, body]
        return None
    if system == "Windows":
        t = title.replace("'", "''")
        b = body.replace("'", "''")
        script = (
            "Add-Type -AssemblyName System.Windows.Forms; "
            "$n = New-Object System.Windows.Forms.NotifyIcon; "
            "$n.Icon = [System.Drawing.SystemIcons]::Information; "
            "$n.Visible = $true; "
            f"$n.ShowBalloonTip(5000, '{t}', '{b}', 'Info'); "
            "Start-Sleep -Seconds 6; $n.Dispose()"
        )
        return ["powershell", "-NoProfile", "-Command", script]
    return None


class DesktopNotifier(Notifier):
    """Shells out to osascript / notify-send / PowerShell."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def send(self, title: str, body: str) -> bool:
        cmd = _notification_command(title, body)
        if cmd is None:
            logger.debug("No notification backend on %s", platform.system())
            return False
        try:
            result = subprocess.run(
                cmd, capture_output=True, timeout=self.timeout, check=False
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Notification dispatch failed: %s", e)
            return False
        if result.returncode != 0:
            logger.warning(
                "Notification command exited %d: %s",
                result.returncode,
                result.stderr.decode("utf-8", "replace").strip(),
            )
            return False
        return True


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _pct(value: float) -> int:
    return int(round(value))


def _same_window(warned_for: Optional[datetime], resets_at: datetime) -> bool:
    """Whether *resets_at* is the window already warned about.

    Providers return slightly different timestamps for the same window.

    >>> from datetime import timedelta
    >>> t = datetime(2025, 1, 1, 12, 0)
    >>> _same_window(t, t + timedelta(milliseconds=7))
    True
    >>> _same_window(t, t + timedelta(hours=5))
    False
    >>> _same_window(None, t)
    False
    """
    if warned_for is None:
        return False
    return abs((resets_at - warned_for).total_seconds()) <= RESETS_AT_TOLERANCE_SECONDS


def _prefix(account_name: Optional[str], multi_account: bool) -> str:
    if multi_account and account_name:
        return f"[{account_name}] "
    return ""


class NotificationEngine:
    """Per-(account, limit) notification state plus dispatch."""

    def __init__(
        self,
        settings: Optional[NotificationSettings] = None,
        notifier: Optional[Notifier] = None,
        publish: Optional[Callable[[str, UsageReset], object]] = None,
    ):
        self._settings = settings or NotificationSettings()
        self.notifier = notifier
        self._publish = publish
        self._states: dict[tuple[str, str], NotificationState] = {}
        self._expired: set[str] = set()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def settings(self) -> NotificationSettings:
        return self._settings

    def update_settings(self, settings: NotificationSettings) -> None:
        self._settings = settings

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def get_state(self, account_id: str, limit_id: str) -> Optional[NotificationState]:
        with self._lock_for(account_id):
            state = self._states.get((account_id, limit_id))
            return state.model_copy() if state else None

    def clear_account(self, account_id: str) -> None:
        """Drop all state for an account (account deletion)."""
        with self._locks_guard:
            for key in [k for k in self._states if k[0] == account_id]:
                del self._states[key]
            self._expired.discard(account_id)
            self._locks.pop(account_id, None)

    # -- evaluation ---------------------------------------------------------

    def evaluate(
        self,
        snapshot: UsageSnapshot,
        account_name: Optional[str] = None,
        multi_account: bool = False,
        now: Optional[datetime] = None,
        local_time: Union[dt_time, datetime, None] = None,
    ) -> list[Notification]:
        """Evaluate a fresh snapshot; dispatch and return computed notifications."""
        settings = self._settings
        now = now or utc_now()
        prefix = _prefix(account_name, multi_account)
        computed: list[Notification] = []
        resets: list[UsageReset] = []

        with self._lock_for(snapshot.account_id):
            for limit in snapshot.limits:
                key = (snapshot.account_id, limit.id)
                state = self._states.get(key) or NotificationState(
                    account_id=snapshot.account_id, limit_id=limit.id
                )
                notes, was_reset = self._evaluate_limit(state, limit, settings, prefix, now)
                computed.extend(notes)
                if was_reset:
                    resets.append(
                        UsageReset(
                            account_id=snapshot.account_id,
                            limit_id=limit.id,
                            label=limit.label,
                        )
                    )
                self._states[key] = state

        if self._publish is not None:
            for reset in resets:
                self._publish(USAGE_RESET, reset)
        return self._deliver(computed, settings, local_time)

    def _evaluate_limit(
        self,
        state: NotificationState,
        limit: UsageLimit,
        settings: NotificationSettings,
        prefix: str,
        now: datetime,
    ) -> tuple[list[Notification], bool]:
        current = limit.utilization
        previous = state.last_utilization
        notes: list[Notification] = []
        was_reset = False

        if previous is not None and previous - current >= settings.reset_drop_threshold:
            was_reset = True
            state.last_notified_threshold = None
            state.reset_warning_for = None
            logger.info(
                "Reset detected for %s/%s: %.1f%% -> %.1f%%",
                state.account_id,
                limit.id,
                previous,
                current,
            )
            if settings.notify_on_reset:
                notes.append(
                    Notification(
                        kind="reset",
                        account_id=state.account_id,
                        limit_id=limit.id,
                        utilization=current,
                        title="Usage Reset",
                        body=f"{prefix}{limit.label} has reset! Now at {_pct(current)}%",
                    )
                )
        elif (
            state.last_resets_at is not None
            and limit.resets_at is not None
            and (state.last_resets_at - limit.resets_at).total_seconds()
            > RESETS_AT_TOLERANCE_SECONDS
        ):
            logger.warning(
                "resets_at moved backwards for %s/%s without a reset: %s -> %s",
                state.account_id,
                limit.id,
                state.last_resets_at.isoformat(),
                limit.resets_at.isoformat(),
            )

        thresholds = settings.thresholds
        if (
            state.last_notified_threshold is not None
            and current < state.last_notified_threshold
        ):
            below = [t for t in thresholds if t <= current]
            state.last_notified_threshold = below[-1] if below else None

        baseline = 0.0 if previous is None else previous
        crossed = None
        for t in reversed(thresholds):
            if baseline < t <= current:
                crossed = t
                break
        if crossed is not None and (
            state.last_notified_threshold is None
            or crossed > state.last_notified_threshold
        ):
            state.last_notified_threshold = crossed
            notes.append(
                Notification(
                    kind="threshold",
                    account_id=state.account_id,
                    limit_id=limit.id,
                    threshold=crossed,
                    utilization=current,
                    title=f"{crossed}% Usage Alert",
                    body=f"{prefix}{limit.label} is at {_pct(current)}% usage",
                )
            )

        if limit.resets_at is not None and not _same_window(
            state.reset_warning_for, limit.resets_at
        ):
            remaining = (limit.resets_at - now).total_seconds()
            if (
                0 < remaining <= settings.upcoming_reset_window_seconds
                and current >= settings.upcoming_reset_floor
            ):
                state.reset_warning_for = limit.resets_at
                minutes = max(1, int(round(remaining / 60)))
                notes.append(
                    Notification(
                        kind="upcoming_reset",
                        account_id=state.account_id,
                        limit_id=limit.id,
                        utilization=current,
                        title="Reset Soon",
                        body=(
                            f"{prefix}{limit.label} will reset in {minutes} minutes "
                            f"(currently at {_pct(current)}%)"
                        ),
                    )
                )

        state.last_utilization = current
        if limit.resets_at is not None:
            state.last_resets_at = limit.resets_at
        return notes, was_reset

    def on_session_error(
        self,
        account_id: str,
        kind: str,
        account_name: Optional[str] = None,
        multi_account: bool = False,
        local_time: Union[dt_time, datetime, None] = None,
    ) -> Optional[Notification]:
        """Warn once per error streak when a session expires."""
        settings = self._settings
        with self._lock_for(account_id):
            if kind != SESSION_EXPIRED or account_id in self._expired:
                return None
            self._expired.add(account_id)
        if not settings.notify_on_expiry:
            return None
        note = Notification(
            kind="session_expired",
            account_id=account_id,
            title="Session Expired",
            body=f"{_prefix(account_name, multi_account)}{SESSION_EXPIRED_BODY}",
        )
        return self._deliver([note], settings, local_time)[0]

    def on_session_ok(self, account_id: str) -> None:
        with self._lock_for(account_id):
            self._expired.discard(account_id)

    # -- dispatch -------------------------------------------------------------

    def _deliver(
        self,
        notes: list[Notification],
        settings: NotificationSettings,
        local_time: Union[dt_time, datetime, None],
    ) -> list[Notification]:
        if not notes:
            return notes
        local_time = local_time or datetime.now()
        quiet = not settings.enabled or is_dnd_active(settings, local_time)
        delivered: list[Notification] = []
        for note in notes:
            if quiet:
                logger.debug("Suppressed notification: %s", note.title)
                delivered.append(note.model_copy(update={"suppressed": True}))
                continue
            if self.notifier is not None:
                try:
                    self.notifier.send(note.title, note.body)
                except Exception as e:
                    logger.warning("Notifier failed for %r: %s", note.title, e)
            delivered.append(note)
        return delivered
