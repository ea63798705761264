"""Claude Code usage provider (OAuth access token).

Reads the same 5-hour / 7-day windows from the Anthropic OAuth usage API
that Claude Code itself uses.
"""

from quotawatch.models import Credentials
from quotawatch.providers import UsageProvider

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
OAUTH_BETA_HEADER = "oauth-2025-04-20"


class ClaudeCodeProvider(UsageProvider):
    id = "claude_code"
    name = "Claude Code"
    windows = (
        ("five_hour", "5-Hour Limit", None),
        ("seven_day", "Weekly Limit", None),
        ("seven_day_opus", "Weekly Opus", "opus"),
        ("seven_day_sonnet", "Weekly Sonnet", "sonnet"),
    )

    def validate(self, credentials: Credentials) -> bool:
        """
        >>> ClaudeCodeProvider().validate(Credentials(access_token="sk-ant-oat01-x"))
        True
        >>> ClaudeCodeProvider().validate(Credentials())
        False
        """
        return bool((credentials.access_token or "").strip())

    def build_request(self, credentials: Credentials) -> tuple[str, dict]:
        return USAGE_URL, {
            "Authorization": f"Bearer {credentials.access_token.strip()}",
            "anthropic-beta": OAUTH_BETA_HEADER,
        }
