"""Domain models shared by the scheduler, event bus, API and CLI.

Pydantic v2 models.  Python code uses snake_case attributes; the wire
format (events, REST responses) uses camelCase aliases, so dump with
``model_dump(by_alias=True, mode="json")`` when serializing.
"""

import math
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

HEALTHY = "healthy"
DEGRADED = "degraded"
PAUSED = "paused"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_unix_ms(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to unix milliseconds.

    >>> to_unix_ms(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc))
    1000
    >>> to_unix_ms(None) is None
    True
    """
    if value is None:
        return None
    return int(value.timestamp() * 1000)


class CamelModel(BaseModel):
    """Base model with camelCase wire aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Accounts + credentials
# ---------------------------------------------------------------------------


class Account(CamelModel):
    """A polled account.

    >>> Account(id="a1", provider_id="claude", display_name="Work").model_dump(by_alias=True)["providerId"]
    'claude'
    """

    id: str
    provider_id: str
    display_name: str
    credentials_ref: Optional[str] = None
    created_at: Optional[str] = None


class Credentials(CamelModel):
    """Provider credentials.  Which fields are required is up to the provider."""

    org_id: Optional[str] = None
    session_key: Optional[str] = Field(default=None, repr=False)
    access_token: Optional[str] = Field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Usage snapshots
# ---------------------------------------------------------------------------


class UsageLimit(CamelModel):
    """One quota window of an account, e.g. the rolling 5-hour limit.

    Utilization is clamped into [0, 100].

    >>> UsageLimit(id="five_hour", label="5-Hour Limit", utilization=130).utilization
    100.0
    >>> UsageLimit(id="five_hour", label="5-Hour Limit", utilization=-3).utilization
    0.0
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str
    label: str
    utilization: float
    resets_at: Optional[datetime] = None
    category: Optional[str] = None

    @field_validator("utilization", mode="before")
    @classmethod
    def _clamp_utilization(cls, value) -> float:
        value = float(value)
        if math.isnan(value):
            return 0.0
        return min(100.0, max(0.0, value))


class UsageSnapshot(CamelModel):
    """Immutable result of one successful fetch.

    >>> snap = UsageSnapshot(account_id="a1", provider_id="claude",
    ...     limits=[UsageLimit(id="five_hour", label="5h", utilization=42)])
    >>> snap.max_utilization()
    42.0
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    account_id: str
    provider_id: str
    captured_at: datetime = Field(default_factory=utc_now)
    limits: tuple[UsageLimit, ...] = ()

    def max_utilization(self) -> float:
        """Worst-case utilization across all limits (0.0 when there are none)."""
        return max((limit.utilization for limit in self.limits), default=0.0)

    def get_limit(self, limit_id: str) -> Optional[UsageLimit]:
        for limit in self.limits:
            if limit.id == limit_id:
                return limit
        return None


# ---------------------------------------------------------------------------
# Session health + notification state
# ---------------------------------------------------------------------------


class SessionState(CamelModel):
    """Per-account health.  ``paused`` mirrors ``consecutive_errors >= threshold``."""

    account_id: str
    consecutive_errors: int = 0
    paused: bool = False
    last_error_kind: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def status(self) -> str:
        """healthy / degraded / paused, derived from the counter."""
        if self.paused:
            return PAUSED
        if self.consecutive_errors > 0:
            return DEGRADED
        return HEALTHY

    @computed_field
    @property
    def valid(self) -> bool:
        """Session is valid when the last fetch succeeded."""
        return self.consecutive_errors == 0


class NotificationState(CamelModel):
    """Edge-trigger memory for one (account, limit) pair."""

    account_id: str
    limit_id: str
    last_notified_threshold: Optional[int] = None
    last_utilization: Optional[float] = None
    last_resets_at: Optional[datetime] = None
    reset_warning_for: Optional[datetime] = None


class Notification(CamelModel):
    """A computed user-facing notification.

    ``suppressed`` is True when it was computed but not dispatched (DND or
    notifications disabled).
    """

    kind: Literal["threshold", "reset", "upcoming_reset", "session_expired"]
    account_id: str
    title: str
    body: str
    limit_id: Optional[str] = None
    threshold: Optional[int] = None
    utilization: Optional[float] = None
    suppressed: bool = False


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------


class UsageUpdate(CamelModel):
    account_id: str
    provider_id: str
    data: Optional[UsageSnapshot] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class SessionStatus(CamelModel):
    account_id: str
    valid: bool
    error_count: int
    paused: bool


class SchedulerStatus(CamelModel):
    running: bool
    interval_secs: int
    next_refresh_secs: Optional[int] = None


class UsageReset(CamelModel):
    account_id: str
    limit_id: str
    label: str


class SystemWake(CamelModel):
    gap_secs: float
