"""Unit tests for the quotawatch CLI.

The local API is replaced by an ``httpx.MockTransport`` and the CLI config
file lives in a temp dir.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest
from click.testing import CliRunner

from quotawatch import cli
from quotawatch.config import load_cli_config

STATUS_BODY = {
    "timestamp": "2025-06-01T12:00:00+00:00",
    "accounts": [
        {
            "id": "a1",
            "name": "Work",
            "provider": "claude",
            "limits": [
                {
                    "id": "five_hour",
                    "label": "5-Hour Limit",
                    "utilization": 91.0,
                    "resetsAt": "2099-01-01T00:00:00Z",
                    "category": None,
                }
            ],
            "lastUpdated": "2025-06-01T12:00:00+00:00",
            "sessionValid": True,
            "sessionStatus": "healthy",
            "error": None,
        },
        {
            "id": "b2",
            "name": "Home",
            "provider": "claude",
            "limits": [],
            "lastUpdated": None,
            "sessionValid": False,
            "sessionStatus": "paused",
            "error": "HTTP 401",
        },
    ],
    "tray": {"level": "critical", "percentage": 91, "tooltip": "quotawatch"},
}


@pytest.fixture
def api(monkeypatch, tmp_path):
    """Route CLI requests to a handler; returns the list of seen requests."""
    seen = []
    routes = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"error": {"message": "not found", "code": "NOT_FOUND"}})
        result = routes[key]
        if callable(result):
            return result(request)
        status, body = result
        return httpx.Response(status, json=body)

    def client(config):
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        return httpx.Client(
            transport=httpx.MockTransport(handler),
            base_url="http://testserver",
            headers=headers,
        )

    monkeypatch.setattr(cli, "_client", client)
    monkeypatch.setattr(cli, "_config_path", lambda: tmp_path / "cli.json")
    return routes, seen


def test_status_table(api):
    """
    >>> # Verified via unit test
    """
    routes, _ = api
    routes[("GET", "/status")] = (200, STATUS_BODY)
    result = CliRunner().invoke(cli.main, ["status"])
    assert result.exit_code == 0, result.output
    assert "Work" in result.output
    assert "91%" in result.output
    assert "paused" in result.output


def test_status_json_filtered(api):
    """
    >>> # Verified via unit test
    """
    routes, _ = api
    routes[("GET", "/status")] = (200, STATUS_BODY)
    result = CliRunner().invoke(cli.main, ["status", "--json", "--account", "home"])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert [a["id"] for a in data["accounts"]] == ["b2"]


def test_status_unknown_account(api):
    """
    >>> # Verified via unit test
    """
    routes, _ = api
    routes[("GET", "/status")] = (200, STATUS_BODY)
    result = CliRunner().invoke(cli.main, ["status", "--account", "nobody"])
    assert result.exit_code == 1


def test_refresh_ok_and_rate_limited(api):
    """429 gets its own exit code so scripts can tell it from failures.

    >>> # Verified via unit test
    """
    routes, _ = api
    routes[("POST", "/refresh")] = (
        200,
        {
            "success": True,
            "message": "Refreshed 1 account(s)",
            "refreshed": ["a1"],
            "skipped": [{"accountId": "b2", "reason": "paused"}],
        },
    )
    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 0
    assert "Refreshed 1 account(s)" in result.output
    assert "b2: paused" in result.output

    routes[("POST", "/refresh")] = (
        429,
        {"success": False, "message": "Refresh rate limited, retry in 7.5s", "retryAfter": 7.5},
    )
    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 2
    assert "retry in 7.5s" in result.output


def test_server_not_running(monkeypatch, tmp_path):
    """
    >>> # Verified via unit test
    """

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr(
        cli, "_client", lambda config: httpx.Client(transport=httpx.MockTransport(refuse), base_url="http://testserver")
    )
    monkeypatch.setattr(cli, "_config_path", lambda: tmp_path / "cli.json")
    result = CliRunner().invoke(cli.main, ["status"])
    assert result.exit_code == 1
    assert "not running" in result.output


def test_accounts_add_sends_credentials(api):
    """
    >>> # Verified via unit test
    """
    routes, seen = api
    routes[("POST", "/accounts")] = (201, {"id": "abc123", "name": "Work"})
    result = CliRunner().invoke(
        cli.main, ["accounts", "add", "Work", "--org-id", "org-1", "--session-key", "sk"]
    )
    assert result.exit_code == 0, result.output
    body = json.loads(seen[0].content)
    assert body["name"] == "Work"
    assert body["provider"] == "claude"
    assert body["credentials"]["orgId"] == "org-1"
    assert body["credentials"]["sessionKey"] == "sk"


def test_accounts_remove_missing(api):
    """API errors are printed and exit 1.

    >>> # Verified via unit test
    """
    result = CliRunner().invoke(cli.main, ["accounts", "remove", "ghost"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_history_table(api):
    """
    >>> # Verified via unit test
    """
    routes, seen = api
    routes[("GET", "/history")] = (
        200,
        {
            "entries": [
                {
                    "id": "1-claude-a1",
                    "account_id": "a1",
                    "provider_id": "claude",
                    "timestamp": "2025-06-01T12:00:00.000+00:00",
                    "limits": [{"id": "five_hour", "label": "5-Hour Limit", "utilization": 40.0}],
                }
            ],
            "total": 1,
        },
    )
    result = CliRunner().invoke(cli.main, ["history", "--days", "3"])
    assert result.exit_code == 0, result.output
    assert "40%" in result.output
    assert seen[0].url.params["days"] == "3"


def test_config_set_and_show(api, tmp_path):
    """
    >>> # Verified via unit test
    """
    runner = CliRunner()
    assert runner.invoke(cli.main, ["config", "set", "port", "40000"]).exit_code == 0
    assert runner.invoke(cli.main, ["config", "set", "token", "s3cret"]).exit_code == 0

    saved = load_cli_config(tmp_path / "cli.json")
    assert saved.port == 40000
    assert saved.token == "s3cret"

    shown = runner.invoke(cli.main, ["config", "show"])
    assert "40000" in shown.output
    assert "s3cret" not in shown.output


def test_config_set_rejects_bad_port(api, tmp_path):
    """
    >>> # Verified via unit test
    """
    runner = CliRunner()
    assert runner.invoke(cli.main, ["config", "set", "port", "abc"]).exit_code == 1
    assert runner.invoke(cli.main, ["config", "set", "port", "80"]).exit_code == 1
    assert not (tmp_path / "cli.json").exists()


def test_token_sent_as_bearer(api, tmp_path):
    """
    >>> # Verified via unit test
    """
    routes, seen = api
    routes[("GET", "/accounts")] = (200, [])
    runner = CliRunner()
    runner.invoke(cli.main, ["config", "set", "token", "abc"])
    result = runner.invoke(cli.main, ["accounts", "list"])
    assert result.exit_code == 0
    assert seen[0].headers["authorization"] == "Bearer abc"


def test_format_reset():
    """
    >>> # Verified via unit test
    """
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert cli.format_reset("2025-01-01T12:45:00+00:00", now) == "in 45m"
    assert cli.format_reset("2025-01-01T11:00:00+00:00", now) == "now"
