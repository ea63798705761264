"""Per-account session health state machine.

States are derived from a consecutive-error counter::

    healthy  --error(session_expired|network|unknown)-->  degraded
    degraded --error, counter >= pause_threshold------->  paused
    degraded/paused --success---------------------------> healthy
    any      --resume (new credentials / explicit)------> healthy

``blocked`` and ``rate_limited`` errors are recorded but never advance the
counter.  Paused accounts are skipped by the scheduler until a success or
a resume.

Every transition publishes ``session-status`` through the supplied
callback.  ``record_error`` and ``resume`` always publish; ``record_success``
only when the state actually changed.

>>> tracker = SessionHealthTracker(pause_threshold=2)
>>> tracker.record_error("a1", "network").status
'degraded'
>>> tracker.record_error("a1", "network").paused
True
>>> tracker.record_success("a1").status
'healthy'
"""

import logging
import threading
from typing import Callable, Optional

from quotawatch.config import PAUSE_THRESHOLD
from quotawatch.errors import ERROR_KINDS, counts_toward_pause
from quotawatch.events import SESSION_STATUS
from quotawatch.models import SessionState, SessionStatus, utc_now

logger = logging.getLogger(__name__)

PublishFn = Callable[[str, SessionStatus], object]


class SessionHealthTracker:
    """Per-key-locked map of account id -> SessionState."""

    def __init__(
        self, pause_threshold: int = PAUSE_THRESHOLD, publish: Optional[PublishFn] = None
    ):
        if pause_threshold < 1:
            raise ValueError("pause_threshold must be >= 1")
        self.pause_threshold = pause_threshold
        self._publish = publish
        self._states: dict[str, SessionState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def _emit(self, state: SessionState) -> None:
        if self._publish is None:
            return
        self._publish(
            SESSION_STATUS,
            SessionStatus(
                account_id=state.account_id,
                valid=state.valid,
                error_count=state.consecutive_errors,
                paused=state.paused,
            ),
        )

    def get(self, account_id: str) -> SessionState:
        """Current state (a copy).  Unknown accounts are healthy."""
        with self._lock_for(account_id):
            state = self._states.get(account_id)
            if state is None:
                return SessionState(account_id=account_id)
            return state.model_copy()

    def is_paused(self, account_id: str) -> bool:
        return self.get(account_id).paused

    def all(self) -> dict[str, SessionState]:
        with self._locks_guard:
            ids = list(self._states)
        return {account_id: self.get(account_id) for account_id in ids}

    def record_success(self, account_id: str) -> SessionState:
        """Reset the counter to 0 and unpause, whatever the prior state."""
        with self._lock_for(account_id):
            previous = self._states.get(account_id)
            changed = previous is not None and (
                previous.consecutive_errors != 0 or previous.paused
            )
            state = SessionState(account_id=account_id, updated_at=utc_now())
            self._states[account_id] = state
            result = state.model_copy()
        if changed:
            logger.info("Account %s recovered", account_id)
            self._emit(result)
        return result

    def record_error(self, account_id: str, kind: str, message: str = "") -> SessionState:
        """Record a classified fetch error; may pause the account."""
        if kind not in ERROR_KINDS:
            raise ValueError(f"Unknown error kind: {kind}")
        with self._lock_for(account_id):
            previous = self._states.get(account_id) or SessionState(account_id=account_id)
            errors = previous.consecutive_errors
            if counts_toward_pause(kind):
                errors += 1
            state = SessionState(
                account_id=account_id,
                consecutive_errors=errors,
                paused=errors >= self.pause_threshold,
                last_error_kind=kind,
                last_error=message or kind,
                updated_at=utc_now(),
            )
            self._states[account_id] = state
            result = state.model_copy()
        if result.paused and not previous.paused:
            logger.warning(
                "Account %s paused after %d consecutive errors (last: %s)",
                account_id,
                result.consecutive_errors,
                kind,
            )
        self._emit(result)
        return result

    def resume(self, account_id: str) -> SessionState:
        """Unconditionally return an account to healthy."""
        with self._lock_for(account_id):
            state = SessionState(account_id=account_id, updated_at=utc_now())
            self._states[account_id] = state
            result = state.model_copy()
        logger.info("Account %s resumed", account_id)
        self._emit(result)
        return result

    def remove(self, account_id: str) -> None:
        """Forget an account entirely (account deletion)."""
        with self._locks_guard:
            self._states.pop(account_id, None)
            self._locks.pop(account_id, None)
