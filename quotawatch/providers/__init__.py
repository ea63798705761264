"""Provider adapters: authenticate, fetch and parse a provider's usage payload.

Each provider implements ``validate(credentials)`` and
``fetch(credentials, account_id)``.  Failures are raised as
:class:`~quotawatch.errors.ProviderError` with a classified kind.  The
scheduler looks providers up in a :class:`ProviderRegistry` keyed by id.
"""

import json
import logging
from typing import Iterable, Optional

import httpx

from quotawatch.config import REQUEST_TIMEOUT
from quotawatch.errors import NETWORK, UNKNOWN, ProviderError, classify_status
from quotawatch.models import Credentials, UsageLimit, UsageSnapshot

logger = logging.getLogger(__name__)


def parse_window(
    data: dict, key: str, label: str, category: Optional[str] = None
) -> Optional[UsageLimit]:
    """Parse one ``{"utilization": .., "resets_at": ..}`` window.

    Windows that are missing or have no ``resets_at`` are skipped.

    >>> parse_window({"five_hour": {"utilization": 12.5, "resets_at": "2025-01-01T00:00:00Z"}},
    ...              "five_hour", "5-Hour Limit").utilization
    12.5
    >>> parse_window({"five_hour": {"utilization": 3, "resets_at": None}}, "five_hour", "5h") is None
    True
    """
    window = data.get(key)
    if not isinstance(window, dict) or not window.get("resets_at"):
        return None
    return UsageLimit(
        id=key,
        label=label,
        utilization=window.get("utilization") or 0.0,
        resets_at=window["resets_at"],
        category=category,
    )


class UsageProvider:
    """Base class for provider adapters.

    Subclasses set ``id``/``name`` and implement :meth:`validate`,
    :meth:`build_request` and :meth:`parse`.
    """

    id = ""
    name = ""
    # (response key, label, category) for every window the provider reports
    windows: tuple[tuple[str, str, Optional[str]], ...] = ()

    def __init__(
        self, client: Optional[httpx.AsyncClient] = None, timeout: float = REQUEST_TIMEOUT
    ):
        self._client = client
        self.timeout = timeout
        self.logger = logging.getLogger(f"quotawatch.providers.{self.id or 'base'}")

    def validate(self, credentials: Credentials) -> bool:
        raise NotImplementedError

    def build_request(self, credentials: Credentials) -> tuple[str, dict]:
        """Return ``(url, headers)`` for the usage request."""
        raise NotImplementedError

    def parse(self, data: dict, account_id: str) -> UsageSnapshot:
        limits = []
        for key, label, category in self.windows:
            limit = parse_window(data, key, label, category)
            if limit is not None:
                limits.append(limit)
        return UsageSnapshot(account_id=account_id, provider_id=self.id, limits=limits)

    async def _get(self, url: str, headers: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=headers)

    async def fetch(self, credentials: Credentials, account_id: str = "") -> UsageSnapshot:
        """Fetch and parse current usage, raising ``ProviderError`` on failure."""
        if not self.validate(credentials):
            raise ProviderError(
                UNKNOWN, "Missing or invalid credentials", code="MISSING_CREDENTIALS"
            )
        url, headers = self.build_request(credentials)
        try:
            resp = await self._get(url, headers)
        except httpx.TimeoutException as e:
            raise ProviderError(NETWORK, f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(NETWORK, f"Request failed: {e}") from e

        if resp.status_code != 200:
            kind = classify_status(resp.status_code)
            self.logger.warning(
                "Usage fetch HTTP %d for account %s", resp.status_code, account_id
            )
            raise ProviderError(
                kind, f"HTTP {resp.status_code}", status_code=resp.status_code
            )

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ProviderError(UNKNOWN, f"Invalid JSON: {e}", code="PARSE_ERROR") from e
        if not isinstance(data, dict):
            raise ProviderError(UNKNOWN, "Unexpected response shape", code="PARSE_ERROR")
        try:
            snapshot = self.parse(data, account_id)
        except (ValueError, TypeError) as e:
            raise ProviderError(UNKNOWN, f"Parse failed: {e}", code="PARSE_ERROR") from e
        self.logger.debug("Usage fetched for account %s", account_id)
        return snapshot


class ProviderRegistry:
    """Providers keyed by id.

    >>> registry = ProviderRegistry()
    >>> "claude" in registry
    False
    """

    def __init__(self, providers: Optional[Iterable[UsageProvider]] = None):
        self._providers: dict[str, UsageProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: UsageProvider) -> None:
        if not provider.id:
            raise ValueError("Provider must have an id")
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> UsageProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ValueError(f"Unknown provider: {provider_id}")
        return provider

    def ids(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers


def default_registry(client: Optional[httpx.AsyncClient] = None) -> ProviderRegistry:
    """Registry with every built-in provider."""
    from quotawatch.providers.claude import ClaudeWebProvider
    from quotawatch.providers.claude_code import ClaudeCodeProvider

    return ProviderRegistry([ClaudeWebProvider(client), ClaudeCodeProvider(client)])


async def test_connection(provider: UsageProvider, credentials: Credentials) -> dict:
    """Try one fetch and report the outcome with a user-facing hint."""
    if not provider.validate(credentials):
        return {
            "success": False,
            "code": "MISSING_CREDENTIALS",
            "message": "Missing or invalid credentials",
            "hint": ProviderError(UNKNOWN, code="MISSING_CREDENTIALS").hint,
        }
    try:
        snapshot = await provider.fetch(credentials, account_id="connection-test")
    except ProviderError as e:
        return {"success": False, "code": e.code, "message": e.message, "hint": e.hint}
    return {
        "success": True,
        "message": f"Connected to {provider.name}",
        "limits": [
            limit.model_dump(by_alias=True, mode="json") for limit in snapshot.limits
        ],
    }


# pytest would otherwise collect the coroutine above as a test
test_connection.__test__ = False
