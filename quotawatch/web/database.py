"""SQLite database layer for quotawatch.

5 tables across three concerns:
- Accounts: accounts, credentials
- Configuration: settings (JSON values)
- History: usage_history (one row per snapshot), usage_history_limits

WAL mode for concurrent reads, single writer lock for atomic writes.
"""

import csv
import io
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from quotawatch.models import UsageSnapshot

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    credentials_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS credentials (
    account_id TEXT PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS usage_history (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_history_limits (
    history_id TEXT NOT NULL REFERENCES usage_history(id) ON DELETE CASCADE,
    limit_id TEXT NOT NULL,
    label TEXT,
    utilization REAL NOT NULL,
    resets_at TEXT,
    category TEXT,
    PRIMARY KEY (history_id, limit_id)
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_history_ts ON usage_history(timestamp);
CREATE INDEX IF NOT EXISTS idx_history_account ON usage_history(account_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_history_provider ON usage_history(provider_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_history_limits_limit ON usage_history_limits(limit_id);
"""

CSV_HEADER = ["id", "provider", "timestamp", "limit_id", "utilization", "resets_at"]

LAST_CLEANUP_KEY = "history_last_cleanup"

TimeArg = Union[str, datetime, None]


def _default_db_path() -> str:
    """Return default database path: ~/.quotawatch/quotawatch.db"""
    return str(Path.home() / ".quotawatch" / "quotawatch.db")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: TimeArg) -> Optional[str]:
    """Normalize a datetime (or ISO string) to the stored UTC format.

    >>> to_iso(datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
    '2025-01-02T03:04:05.000+00:00'
    >>> to_iso("2025-01-02T03:04:05Z")
    '2025-01-02T03:04:05.000+00:00'
    >>> to_iso(None) is None
    True
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def history_entry_id(snapshot: UsageSnapshot) -> str:
    """Deterministic entry id: ``{unix_ms}-{provider}-{account}``."""
    ms = int(snapshot.captured_at.timestamp() * 1000)
    return f"{ms}-{snapshot.provider_id}-{snapshot.account_id}"


class Database:
    """SQLite database manager with WAL mode and thread-safe writes.

    >>> db = Database(":memory:")
    >>> db.db_path
    ':memory:'
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = _default_db_path()

        self.db_path = db_path
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._shared: Optional[sqlite3.Connection] = None

        # Create parent dir + file if needed (skip for :memory:)
        if db_path != ":memory:" and not Path(db_path).exists():
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(db_path).touch()

        self._init_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        # Every :memory: connection is a separate database, so share one
        if self.db_path == ":memory:":
            if self._shared is None:
                self._shared = self._connect()
            return self._shared
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = self._connect()
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        if self.db_path == ":memory:":
            with self._write_lock:
                yield self._get_connection()
        else:
            yield self._get_connection()

    def _init_schema(self) -> None:
        with self._writer() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # ==================================================================
    # Account CRUD
    # ==================================================================

    def create_account(
        self,
        display_name: str,
        provider_id: str,
        account_id: Optional[str] = None,
    ) -> dict:
        """Create an account and return its row.

        >>> db = Database(":memory:")
        >>> row = db.create_account("Work", "claude", account_id="a1")
        >>> row["id"], row["provider_id"], row["credentials_ref"]
        ('a1', 'claude', 'credentials:a1')
        """
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValueError("display_name is required")
        account_id = account_id or uuid.uuid4().hex[:12]
        now = _now_iso()
        with self._writer() as conn:
            try:
                conn.execute(
                    """INSERT INTO accounts
                       (id, provider_id, display_name, credentials_ref, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (account_id, provider_id, display_name, f"credentials:{account_id}", now, now),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Account already exists: {account_id}") from e
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return dict(row)

    def get_account(self, account_id: str) -> Optional[dict]:
        """Get an account by id.

        >>> Database(":memory:").get_account("missing") is None
        True
        """
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return dict(row) if row else None

    def list_accounts(self) -> list[dict]:
        """List accounts in creation order.

        >>> Database(":memory:").list_accounts()
        []
        """
        with self._reader() as conn:
            cursor = conn.execute("SELECT * FROM accounts ORDER BY created_at ASC, id ASC")
            return [dict(row) for row in cursor.fetchall()]

    def update_account(self, account_id: str, **kwargs: Any) -> bool:
        """Update mutable account fields (display_name)."""
        allowed = {"display_name"}
        updates = {k: v for k, v in kwargs.items() if k in allowed}
        if not updates:
            return False
        updates["updated_at"] = _now_iso()
        assignments = ", ".join(f"{k} = ?" for k in updates)
        with self._writer() as conn:
            cursor = conn.execute(
                f"UPDATE accounts SET {assignments} WHERE id = ?",
                list(updates.values()) + [account_id],
            )
            return cursor.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        """Delete an account and (via cascade) its credentials.

        >>> db = Database(":memory:")
        >>> _ = db.create_account("Work", "claude", account_id="a1")
        >>> db.delete_account("a1"), db.delete_account("a1")
        (True, False)
        """
        with self._writer() as conn:
            cursor = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            return cursor.rowcount > 0

    # ==================================================================
    # Credentials
    # ==================================================================

    def save_credentials(self, account_id: str, data: dict) -> None:
        """Store credentials for an account (upsert)."""
        payload = json.dumps({k: v for k, v in data.items() if v is not None})
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO credentials (account_id, data, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(account_id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at""",
                (account_id, payload, _now_iso()),
            )

    def get_credentials(self, account_id: str) -> Optional[dict]:
        """
        >>> db = Database(":memory:")
        >>> _ = db.create_account("Work", "claude", account_id="a1")
        >>> db.save_credentials("a1", {"org_id": "org", "session_key": "sk"})
        >>> db.get_credentials("a1")["org_id"]
        'org'
        """
        with self._reader() as conn:
            row = conn.execute(
                "SELECT data FROM credentials WHERE account_id = ?", (account_id,)
            ).fetchone()
            return json.loads(row["data"]) if row else None

    # ==================================================================
    # Settings CRUD
    # ==================================================================

    def get_setting(self, key: str) -> Optional[str]:
        """Get a setting value by key.

        >>> db = Database(":memory:")
        >>> db.get_setting("nonexistent") is None
        True
        """
        with self._reader() as conn:
            cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert).

        >>> db = Database(":memory:")
        >>> db.set_setting("scheduler", '{"mode": "fixed"}')
        >>> db.get_setting("scheduler")
        '{"mode": "fixed"}'
        """
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO settings (key, value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (key, value, _now_iso()),
            )

    # ==================================================================
    # Usage history
    # ==================================================================

    def append_snapshot(self, snapshot: UsageSnapshot) -> bool:
        """Record a snapshot.  Returns False if the entry id already exists."""
        entry_id = history_entry_id(snapshot)
        with self._writer() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO usage_history (id, account_id, provider_id, timestamp)
                   VALUES (?, ?, ?, ?)""",
                (entry_id, snapshot.account_id, snapshot.provider_id, to_iso(snapshot.captured_at)),
            )
            if cursor.rowcount == 0:
                return False
            conn.executemany(
                """INSERT OR IGNORE INTO usage_history_limits
                   (history_id, limit_id, label, utilization, resets_at, category)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (
                        entry_id,
                        limit.id,
                        limit.label,
                        limit.utilization,
                        to_iso(limit.resets_at),
                        limit.category,
                    )
                    for limit in snapshot.limits
                ],
            )
            return True

    @staticmethod
    def _history_where(
        provider_id: Optional[str],
        account_id: Optional[str],
        start: TimeArg,
        end: TimeArg,
        alias: str = "h",
    ) -> tuple[str, list]:
        conditions: list[str] = []
        params: list = []
        if provider_id:
            conditions.append(f"{alias}.provider_id = ?")
            params.append(provider_id)
        if account_id:
            conditions.append(f"{alias}.account_id = ?")
            params.append(account_id)
        if start is not None:
            conditions.append(f"{alias}.timestamp >= ?")
            params.append(to_iso(start))
        if end is not None:
            conditions.append(f"{alias}.timestamp <= ?")
            params.append(to_iso(end))
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def _attach_limits(self, conn: sqlite3.Connection, rows: list[dict]) -> list[dict]:
        if not rows:
            return rows
        by_id = {row["id"]: row for row in rows}
        for row in rows:
            row["limits"] = []
        placeholders = ",".join("?" for _ in by_id)
        cursor = conn.execute(
            f"""SELECT history_id, limit_id, label, utilization, resets_at, category
                FROM usage_history_limits WHERE history_id IN ({placeholders})
                ORDER BY limit_id ASC""",
            list(by_id),
        )
        for limit in cursor.fetchall():
            by_id[limit["history_id"]]["limits"].append(
                {
                    "id": limit["limit_id"],
                    "label": limit["label"],
                    "utilization": limit["utilization"],
                    "resets_at": limit["resets_at"],
                    "category": limit["category"],
                }
            )
        return rows

    def query_history(
        self,
        provider_id: Optional[str] = None,
        account_id: Optional[str] = None,
        start: TimeArg = None,
        end: TimeArg = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> dict:
        """Query history entries, newest first, with pagination.

        Returns ``{"rows": [...], "total": N}`` where total is the filtered
        count *before* LIMIT/OFFSET.  Each row carries its ``limits``.

        >>> db = Database(":memory:")
        >>> db.query_history()
        {'rows': [], 'total': 0}
        """
        where, params = self._history_where(provider_id, account_id, start, end)
        with self._reader() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM usage_history h{where}", params
            ).fetchone()[0]
            cursor = conn.execute(
                f"SELECT h.* FROM usage_history h{where} ORDER BY h.timestamp DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            )
            rows = [dict(row) for row in cursor.fetchall()]
            return {"rows": self._attach_limits(conn, rows), "total": total}

    def history_stats(
        self,
        provider_id: Optional[str] = None,
        limit_id: Optional[str] = None,
        start: TimeArg = None,
        end: TimeArg = None,
        account_id: Optional[str] = None,
    ) -> Optional[dict]:
        """Aggregate utilization for one limit.  None when nothing matches.

        >>> Database(":memory:").history_stats("claude", "five_hour") is None
        True
        """
        where, params = self._history_where(provider_id, account_id, start, end)
        if limit_id:
            where += (" AND" if where else " WHERE") + " l.limit_id = ?"
            params.append(limit_id)
        with self._reader() as conn:
            row = conn.execute(
                f"""SELECT AVG(l.utilization) AS avg, MAX(l.utilization) AS max,
                           MIN(l.utilization) AS min, COUNT(*) AS count
                    FROM usage_history_limits l
                    JOIN usage_history h ON h.id = l.history_id{where}""",
                params,
            ).fetchone()
        if not row or row["count"] == 0:
            return None
        return {
            "avg": row["avg"],
            "max": row["max"],
            "min": row["min"],
            "count": row["count"],
        }

    def purge_history(self, before: TimeArg = None) -> int:
        """Delete entries older than *before* (all when None).  Returns rows deleted."""
        with self._writer() as conn:
            if before is not None:
                cursor = conn.execute(
                    "DELETE FROM usage_history WHERE timestamp < ?", (to_iso(before),)
                )
            else:
                cursor = conn.execute("DELETE FROM usage_history")
            return cursor.rowcount

    def history_bounds(self) -> dict:
        """Entry count plus oldest/newest timestamps.

        >>> Database(":memory:").history_bounds()
        {'entry_count': 0, 'oldest': None, 'newest': None}
        """
        with self._reader() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS entry_count, MIN(timestamp) AS oldest,
                          MAX(timestamp) AS newest FROM usage_history"""
            ).fetchone()
            return dict(row)

    def export_history(
        self,
        provider_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> list[dict]:
        """All matching entries (newest first) with their limits."""
        where, params = self._history_where(provider_id, account_id, None, None)
        with self._reader() as conn:
            cursor = conn.execute(
                f"SELECT h.* FROM usage_history h{where} ORDER BY h.timestamp DESC",
                params,
            )
            rows = [dict(row) for row in cursor.fetchall()]
            return self._attach_limits(conn, rows)

    def export_history_csv(
        self,
        provider_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> str:
        """One CSV line per (entry, limit).

        >>> Database(":memory:").export_history_csv().strip()
        'id,provider,timestamp,limit_id,utilization,resets_at'
        """
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for entry in self.export_history(provider_id, account_id):
            for limit in entry["limits"]:
                writer.writerow(
                    [
                        entry["id"],
                        entry["provider_id"],
                        entry["timestamp"],
                        limit["id"],
                        limit["utilization"],
                        limit["resets_at"] or "",
                    ]
                )
        return buf.getvalue()
