"""
CLI for quotawatch.

``quotawatch serve`` runs the scheduler and local API; every other command
talks to a running instance over HTTP.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from quotawatch import __version__
from quotawatch.config import (
    DEFAULT_HOST,
    CliConfig,
    default_cli_config_path,
    load_cli_config,
    save_cli_config,
)
from quotawatch.tray import CRITICAL, HIGH, MEDIUM, usage_level

console = Console()
logger = logging.getLogger(__name__)

LEVEL_STYLES = {CRITICAL: "red", HIGH: "yellow", MEDIUM: "cyan"}


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _config_path() -> Path:
    return default_cli_config_path()


def _client(config: CliConfig) -> httpx.Client:
    headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
    return httpx.Client(
        base_url=f"http://{DEFAULT_HOST}:{config.port}", headers=headers, timeout=30.0
    )


def _request(method: str, path: str, **kwargs) -> httpx.Response:
    """Call the local API, exiting with a friendly message when it is down."""
    config = load_cli_config(_config_path())
    try:
        with _client(config) as client:
            resp = client.request(method, path, **kwargs)
    except httpx.ConnectError:
        console.print(
            f"[red]Error:[/red] quotawatch is not running on port {config.port}"
        )
        console.print("Start it with: [bold]quotawatch serve[/bold]")
        sys.exit(1)
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] request failed: {e}")
        sys.exit(1)
    if resp.status_code == 401:
        console.print("[red]Error:[/red] unauthorized, set the token with 'quotawatch config set token <token>'")
        sys.exit(1)
    return resp


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        if isinstance(data.get("error"), dict):
            return data["error"].get("message", "")
        if "message" in data:
            return data["message"]
        if "detail" in data:
            return str(data["detail"])
    return f"HTTP {resp.status_code}"


def _json_or_exit(resp: httpx.Response):
    if resp.status_code >= 400:
        console.print(f"[red]Error:[/red] {_error_message(resp)}")
        sys.exit(1)
    return resp.json()


def format_reset(resets_at: Optional[str], now: Optional[datetime] = None) -> str:
    """Human-readable time until a reset.

    >>> now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    >>> format_reset("2025-01-01T14:30:00+00:00", now)
    'in 2h 30m'
    >>> format_reset("2025-01-03T13:00:00Z", now)
    'in 2d 1h'
    >>> format_reset(None, now)
    '-'
    """
    if not resets_at:
        return "-"
    try:
        target = datetime.fromisoformat(resets_at.replace("Z", "+00:00"))
    except ValueError:
        return resets_at
    now = now or datetime.now(timezone.utc)
    seconds = int((target - now).total_seconds())
    if seconds <= 0:
        return "now"
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"in {days}d {hours}h"
    if hours:
        return f"in {hours}h {minutes}m"
    return f"in {minutes}m"


def _usage_cell(utilization: float) -> str:
    style = LEVEL_STYLES.get(usage_level(utilization))
    text = f"{utilization:.0f}%"
    return f"[{style}]{text}[/{style}]" if style else text


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(__version__, prog_name="quotawatch")
def main(verbose: bool):
    """quotawatch - usage monitor for Claude accounts."""
    setup_logging(verbose)


@main.command()
@click.option("--host", default=None, help="Bind address (default 127.0.0.1)")
@click.option("--port", "-p", type=int, default=None, help="Port (default 31415)")
@click.option("--db", "db_path", default=None, help="SQLite database path")
def serve(host: Optional[str], port: Optional[int], db_path: Optional[str]):
    """Run the scheduler and the local API."""
    import uvicorn

    if host:
        os.environ["QUOTAWATCH_HOST"] = host
    if port:
        os.environ["QUOTAWATCH_PORT"] = str(port)
    if db_path:
        os.environ["QUOTAWATCH_DB"] = db_path

    bind_host = os.environ.get("QUOTAWATCH_HOST", DEFAULT_HOST)
    bind_port = int(os.environ.get("QUOTAWATCH_PORT", str(load_cli_config(_config_path()).port)))
    console.print(f"[green][OK][/green] quotawatch {__version__} on http://{bind_host}:{bind_port}")
    uvicorn.run("quotawatch.api.main:app", host=bind_host, port=bind_port, log_level="warning")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON")
@click.option("--account", "-a", default=None, help="Filter by account name or id")
def status(as_json: bool, account: Optional[str]):
    """Show current usage for every account."""
    data = _json_or_exit(_request("GET", "/status"))
    accounts = data.get("accounts", [])
    if account:
        needle = account.lower()
        accounts = [
            a for a in accounts if a["id"] == account or needle in (a.get("name") or "").lower()
        ]
        if not accounts:
            console.print(f"[red]Error:[/red] no account matches '{account}'")
            sys.exit(1)

    if as_json:
        click.echo(json.dumps({**data, "accounts": accounts}, indent=2))
        return

    if not accounts:
        console.print("[yellow]No accounts configured.[/yellow] Add one with 'quotawatch accounts add'.")
        return

    table = Table(title="Usage")
    table.add_column("Account", style="bold")
    table.add_column("Limit")
    table.add_column("Usage", justify="right")
    table.add_column("Resets")
    table.add_column("Session")
    for acct in accounts:
        session = acct.get("sessionStatus") or ("healthy" if acct.get("sessionValid") else "degraded")
        session_cell = {
            "healthy": "[green]ok[/green]",
            "degraded": "[yellow]degraded[/yellow]",
            "paused": "[red]paused[/red]",
        }.get(session, session)
        limits = acct.get("limits") or []
        if not limits:
            table.add_row(acct["name"], acct.get("error") or "no data", "-", "-", session_cell)
            continue
        for i, limit in enumerate(limits):
            table.add_row(
                acct["name"] if i == 0 else "",
                limit["label"],
                _usage_cell(limit["utilization"]),
                format_reset(limit.get("resetsAt")),
                session_cell if i == 0 else "",
            )
    console.print(table)


@main.command()
@click.option("--days", "-d", type=int, default=1, help="How many days back")
@click.option("--limit", "-n", type=int, default=50, help="Max entries")
@click.option("--account", "-a", default=None, help="Account id")
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON")
def history(days: int, limit: int, account: Optional[str], as_json: bool):
    """Show recorded usage history."""
    params = {"days": days, "limit": limit}
    if account:
        params["account"] = account
    data = _json_or_exit(_request("GET", "/history", params=params))
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    entries = data.get("entries", [])
    if not entries:
        console.print(f"[yellow]No history in the last {days} day(s).[/yellow]")
        return

    table = Table(title=f"History ({len(entries)} of {data.get('total', len(entries))})")
    table.add_column("Time")
    table.add_column("Account")
    table.add_column("Limit")
    table.add_column("Usage", justify="right")
    for entry in entries:
        for limit_row in entry.get("limits", []):
            table.add_row(
                entry["timestamp"][:19].replace("T", " "),
                entry["account_id"],
                limit_row.get("label") or limit_row["id"],
                _usage_cell(limit_row["utilization"]),
            )
    console.print(table)


@main.command()
def refresh():
    """Force a refresh of every account."""
    resp = _request("POST", "/refresh")
    data = resp.json()
    if resp.status_code == 429:
        console.print(f"[yellow][-][/yellow] {data.get('message', 'Rate limited')}")
        sys.exit(2)
    if resp.status_code >= 400:
        console.print(f"[red]Error:[/red] {_error_message(resp)}")
        sys.exit(1)
    console.print(f"[green][OK][/green] {data['message']}")
    for skipped in data.get("skipped", []):
        console.print(f"  [yellow][-][/yellow] {skipped['accountId']}: {skipped['reason']}")


# --- accounts -----------------------------------------------------------


@main.group()
def accounts():
    """Manage polled accounts."""


@accounts.command("list")
def accounts_list():
    """List accounts and their session state."""
    rows = _json_or_exit(_request("GET", "/accounts"))
    if not rows:
        console.print("[yellow]No accounts configured.[/yellow]")
        return
    table = Table()
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Provider")
    table.add_column("Session")
    table.add_column("Errors", justify="right")
    for row in rows:
        session = row["session"]
        table.add_row(
            row["id"],
            row["name"],
            row["provider"],
            session["status"],
            str(session["consecutiveErrors"]),
        )
    console.print(table)


@accounts.command("add")
@click.argument("name")
@click.option("--provider", default="claude", show_default=True, help="Provider id")
@click.option("--org-id", default=None, help="Organization id (claude)")
@click.option("--session-key", default=None, help="Session key (claude)")
@click.option("--access-token", default=None, help="OAuth access token (claude_code)")
def accounts_add(
    name: str,
    provider: str,
    org_id: Optional[str],
    session_key: Optional[str],
    access_token: Optional[str],
):
    """Add an account."""
    body: dict = {"name": name, "provider": provider}
    if org_id or session_key or access_token:
        body["credentials"] = {
            "orgId": org_id,
            "sessionKey": session_key,
            "accessToken": access_token,
        }
    row = _json_or_exit(_request("POST", "/accounts", json=body))
    console.print(f"[green][OK][/green] Added {row['name']} ({row['id']})")


@accounts.command("remove")
@click.argument("account_id")
def accounts_remove(account_id: str):
    """Remove an account and its history state."""
    _json_or_exit(_request("DELETE", f"/accounts/{account_id}"))
    console.print(f"[green][OK][/green] Removed {account_id}")


@accounts.command("resume")
@click.argument("account_id")
def accounts_resume(account_id: str):
    """Resume a paused account."""
    _json_or_exit(_request("POST", f"/accounts/{account_id}/resume"))
    console.print(f"[green][OK][/green] Resumed {account_id}")


# --- config -------------------------------------------------------------


@main.group()
def config():
    """Show or change CLI settings (port, token)."""


@config.command("show")
def config_show():
    cfg = load_cli_config(_config_path())
    token = "********" if cfg.token else "(none)"
    console.print(
        Panel(
            f"port:  {cfg.port}\ntoken: {token}\nfile:  {_config_path()}",
            title="quotawatch CLI config",
        )
    )


@config.command("set")
@click.argument("key", type=click.Choice(["port", "token"]))
@click.argument("value")
def config_set(key: str, value: str):
    """Set a CLI config value."""
    cfg = load_cli_config(_config_path())
    data = cfg.model_dump()
    if key == "port":
        try:
            data["port"] = int(value)
        except ValueError:
            console.print(f"[red]Error:[/red] port must be a number, got '{value}'")
            sys.exit(1)
    else:
        data["token"] = value or None
    try:
        new_cfg = CliConfig.model_validate(data)
    except ValueError as e:
        console.print(f"[red]Error:[/red] invalid {key}: {e}")
        sys.exit(1)
    path = save_cli_config(new_cfg, _config_path())
    console.print(f"[green][OK][/green] Saved {key} to {path}")


if __name__ == "__main__":
    main()
