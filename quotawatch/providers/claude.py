"""claude.ai web usage provider (organization id + ``sessionKey`` cookie).

The web endpoint sits behind an edge proxy that rejects requests that do
not look like they come from the claude.ai web app, so the request carries
browser headers.  A 403 here usually means the proxy blocked us (transient),
while 401 means the session key expired.
"""

from quotawatch.models import Credentials
from quotawatch.providers import UsageProvider

BASE_URL = "https://claude.ai/api"
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


def usage_url(org_id: str, base_url: str = BASE_URL) -> str:
    """
    >>> usage_url("org-1")
    'https://claude.ai/api/organizations/org-1/usage'
    """
    return f"{base_url}/organizations/{org_id}/usage"


class ClaudeWebProvider(UsageProvider):
    """Usage for a claude.ai subscription, read with a browser session key."""

    id = "claude"
    name = "Claude"
    windows = (
        ("five_hour", "5-Hour Limit", None),
        ("seven_day", "Weekly Limit", None),
        ("seven_day_opus", "Weekly Opus", "opus"),
        ("seven_day_sonnet", "Weekly Sonnet", "sonnet"),
        ("seven_day_oauth_apps", "Weekly OAuth Apps", "oauth"),
    )

    def validate(self, credentials: Credentials) -> bool:
        """Both org id and session key are required; whitespace does not count.

        >>> p = ClaudeWebProvider()
        >>> p.validate(Credentials(org_id="org", session_key="sk-ant-x"))
        True
        >>> p.validate(Credentials(org_id="  ", session_key="sk-ant-x"))
        False
        """
        return bool((credentials.org_id or "").strip()) and bool(
            (credentials.session_key or "").strip()
        )

    def build_request(self, credentials: Credentials) -> tuple[str, dict]:
        headers = {
            "Cookie": f"sessionKey={credentials.session_key.strip()}",
            "User-Agent": USER_AGENT,
            "Accept": "*/*",
            "Accept-Language": "en-US,en;q=0.9",
            "Origin": "https://claude.ai",
            "Referer": "https://claude.ai/",
            "anthropic-client-platform": "web_claude_ai",
            "sec-fetch-dest": "empty",
            "sec-fetch-mode": "cors",
            "sec-fetch-site": "same-origin",
        }
        return usage_url(credentials.org_id.strip()), headers
