"""Error taxonomy for usage fetches and the scheduler control surface.

Provider failures are classified into one of five kinds.  Only some kinds
count toward pausing an account:

- ``session_expired``: credentials are no longer valid (counts)
- ``blocked``: edge / anti-bot block, transient (does not count)
- ``rate_limited``: provider throttling, lengthens the next delay (does not count)
- ``network`` / ``unknown``: transport or unexpected failures (count)
"""

from typing import Optional

SESSION_EXPIRED = "session_expired"
BLOCKED = "blocked"
RATE_LIMITED = "rate_limited"
NETWORK = "network"
UNKNOWN = "unknown"

ERROR_KINDS = (SESSION_EXPIRED, BLOCKED, RATE_LIMITED, NETWORK, UNKNOWN)

# Kinds that advance the consecutive-error counter
PAUSING_KINDS = frozenset({SESSION_EXPIRED, NETWORK, UNKNOWN})

# Machine-readable codes + user hints returned by connection tests
ERROR_CODES = {
    SESSION_EXPIRED: "SESSION_EXPIRED",
    BLOCKED: "CLOUDFLARE_BLOCKED",
    RATE_LIMITED: "RATE_LIMITED",
    NETWORK: "NETWORK_ERROR",
    UNKNOWN: "HTTP_ERROR",
}

ERROR_HINTS = {
    "SESSION_EXPIRED": "Your session key has expired. Log in again and copy a fresh key.",
    "CLOUDFLARE_BLOCKED": "The request was blocked. Wait a few minutes and try again.",
    "RATE_LIMITED": "Too many requests. Wait a moment before refreshing.",
    "NETWORK_ERROR": "Could not reach the provider. Check your internet connection.",
    "HTTP_ERROR": "The provider returned an unexpected response.",
    "PARSE_ERROR": "The provider response could not be parsed.",
    "MISSING_CREDENTIALS": "Enter your credentials before testing the connection.",
    "INVALID_CREDENTIALS": "The credentials are malformed. Check the organization ID and session key.",
}


def counts_toward_pause(kind: str) -> bool:
    """Whether an error of *kind* advances the consecutive-error counter.

    >>> counts_toward_pause("session_expired")
    True
    >>> counts_toward_pause("blocked")
    False
    >>> counts_toward_pause("rate_limited")
    False
    """
    return kind in PAUSING_KINDS


def classify_status(status_code: int) -> str:
    """Map an HTTP status code from a provider to an error kind.

    >>> classify_status(401)
    'session_expired'
    >>> classify_status(403)
    'blocked'
    >>> classify_status(429)
    'rate_limited'
    >>> classify_status(503)
    'network'
    >>> classify_status(418)
    'unknown'
    """
    if status_code == 401:
        return SESSION_EXPIRED
    if status_code == 403:
        return BLOCKED
    if status_code == 429:
        return RATE_LIMITED
    if status_code >= 500:
        return NETWORK
    return UNKNOWN


class QuotaWatchError(Exception):
    """Base class for quotawatch errors."""


class ProviderError(QuotaWatchError):
    """A classified failure from a provider adapter.

    >>> err = ProviderError("blocked", "HTTP 403")
    >>> err.kind, err.code
    ('blocked', 'CLOUDFLARE_BLOCKED')
    >>> ProviderError("unknown", "bad json", code="PARSE_ERROR").code
    'PARSE_ERROR'
    """

    def __init__(
        self,
        kind: str,
        message: str = "",
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        if kind not in ERROR_KINDS:
            raise ValueError(f"Unknown error kind: {kind}")
        super().__init__(message or kind)
        self.kind = kind
        self.message = message or kind
        self.status_code = status_code
        self.code = code or ERROR_CODES[kind]

    @property
    def hint(self) -> str:
        return ERROR_HINTS.get(self.code, "")


class RateLimitedError(QuotaWatchError):
    """Raised when a manual refresh is requested before the minimum interval."""

    def __init__(self, retry_after: float, scope: str = "global"):
        self.retry_after = max(0.0, float(retry_after))
        self.scope = scope
        super().__init__(
            f"Rate limited: retry after {self.retry_after:.1f}s ({scope})"
        )


class AccountNotFoundError(QuotaWatchError, LookupError):
    """Raised when an operation names an account id that is not configured."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")
