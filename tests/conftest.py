"""Shared fixtures for quotawatch tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from quotawatch.models import Credentials, UsageLimit, UsageSnapshot
from quotawatch.providers import ProviderRegistry, UsageProvider
from quotawatch.web.database import Database


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_snapshot(
    account_id: str = "a1",
    utilization: float = 10.0,
    provider_id: str = "fake",
    limit_id: str = "five_hour",
    label: str = "5-Hour Limit",
    resets_at: Optional[datetime] = None,
    captured_at: Optional[datetime] = None,
) -> UsageSnapshot:
    """One-limit snapshot."""
    resets_at = resets_at or datetime.now(timezone.utc) + timedelta(hours=4)
    return UsageSnapshot(
        account_id=account_id,
        provider_id=provider_id,
        captured_at=captured_at or datetime.now(timezone.utc),
        limits=[
            UsageLimit(id=limit_id, label=label, utilization=utilization, resets_at=resets_at)
        ],
    )


class FakeProvider(UsageProvider):
    """In-memory provider: per-account utilization, errors and delays."""

    id = "fake"
    name = "Fake"

    def __init__(self):
        super().__init__()
        self.utilization: dict[str, float] = {}
        self.errors: dict[str, Exception] = {}
        self.delay = 0.0
        self.calls: list[str] = []

    def validate(self, credentials: Credentials) -> bool:
        return bool(credentials.access_token)

    async def fetch(self, credentials: Credentials, account_id: str = "") -> UsageSnapshot:
        self.calls.append(account_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.errors.get(account_id)
        if error is not None:
            raise error
        return make_snapshot(account_id, self.utilization.get(account_id, 10.0))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    return ProviderRegistry([fake_provider])


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()
