"""Tray state: worst-case usage level and tooltip text.

Subscribes to ``usage-update`` and ``session-status`` events and keeps the
latest snapshot per account.  The icon itself is not rendered here; a
front end only needs :meth:`TrayState.to_dict`.
"""

import logging
import threading
from typing import Optional

from quotawatch.events import SESSION_STATUS, USAGE_UPDATE, Event, EventBus
from quotawatch.models import UsageSnapshot

logger = logging.getLogger(__name__)

APP_TITLE = "quotawatch"

LOW = "low"
MEDIUM = "medium"
HIGH = "high"
CRITICAL = "critical"


def usage_level(utilization: float) -> str:
    """
    >>> [usage_level(u) for u in (10, 50, 80, 90)]
    ['low', 'medium', 'high', 'critical']
    """
    if utilization < 50:
        return LOW
    if utilization < 75:
        return MEDIUM
    if utilization < 90:
        return HIGH
    return CRITICAL


class TrayState:
    """Latest usage per account, reduced to one tray signal.

    ``display_limit`` is ``"highest"`` (worst limit of every account) or a
    limit id such as ``"five_hour"``.
    """

    def __init__(self, bus: Optional[EventBus] = None, display_limit: str = "highest"):
        self.display_limit = display_limit
        self._snapshots: dict[str, UsageSnapshot] = {}
        self._names: dict[str, str] = {}
        self._paused: set[str] = set()
        self._lock = threading.Lock()
        self._remove = None
        if bus is not None:
            self._remove = bus.add_listener(self.handle, [USAGE_UPDATE, SESSION_STATUS])

    def set_account_name(self, account_id: str, name: str) -> None:
        with self._lock:
            self._names[account_id] = name

    def forget(self, account_id: str) -> None:
        with self._lock:
            self._snapshots.pop(account_id, None)
            self._names.pop(account_id, None)
            self._paused.discard(account_id)

    def handle(self, event: Event) -> None:
        payload = event.payload
        account_id = payload.get("accountId")
        if not account_id:
            return
        with self._lock:
            if event.topic == USAGE_UPDATE and payload.get("data"):
                self._snapshots[account_id] = UsageSnapshot.model_validate(payload["data"])
            elif event.topic == SESSION_STATUS:
                if payload.get("paused"):
                    self._paused.add(account_id)
                else:
                    self._paused.discard(account_id)

    def _displayed(self, snapshot: UsageSnapshot) -> Optional[float]:
        if self.display_limit == "highest":
            return snapshot.max_utilization() if snapshot.limits else None
        limit = snapshot.get_limit(self.display_limit)
        return limit.utilization if limit else None

    def worst_utilization(self) -> Optional[float]:
        with self._lock:
            values = [
                v
                for v in (self._displayed(s) for s in self._snapshots.values())
                if v is not None
            ]
        return max(values) if values else None

    @property
    def level(self) -> Optional[str]:
        worst = self.worst_utilization()
        return usage_level(worst) if worst is not None else None

    def tooltip(self) -> str:
        with self._lock:
            snapshots = dict(self._snapshots)
            names = dict(self._names)
            paused = set(self._paused)
        if not snapshots and not paused:
            return f"{APP_TITLE}\nNo data available"
        lines = [APP_TITLE]
        multi = len(snapshots) > 1
        for account_id, snapshot in snapshots.items():
            prefix = f"{names.get(account_id, account_id)} " if multi else ""
            for limit in snapshot.limits:
                lines.append(f"{prefix}{limit.label}: {min(round(limit.utilization), 100)}%")
        for account_id in sorted(paused):
            lines.append(f"{names.get(account_id, account_id)}: paused")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        worst = self.worst_utilization()
        return {
            "level": usage_level(worst) if worst is not None else None,
            "percentage": min(round(worst), 100) if worst is not None else None,
            "tooltip": self.tooltip(),
        }

    def close(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None
