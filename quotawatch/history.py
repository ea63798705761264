"""Usage history store: append, query, stats, retention and export.

A thin policy layer over :class:`~quotawatch.web.database.Database`.  The
retention policy lives in the settings table; ``retention_days == 0``
disables age-based cleanup.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from quotawatch.config import RETENTION_KEY, HistoryRetention, load_settings, save_settings
from quotawatch.models import UsageSnapshot
from quotawatch.web.database import LAST_CLEANUP_KEY, Database, TimeArg

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 1000


class HistoryStore:
    """
    >>> store = HistoryStore(Database(":memory:"))
    >>> store.query()
    {'entries': [], 'total': 0}
    """

    def __init__(self, db: Database):
        self.db = db

    # -- writes ---------------------------------------------------------------

    def append(self, snapshot: UsageSnapshot) -> bool:
        """Record a snapshot; duplicates (same entry id) are ignored."""
        inserted = self.db.append_snapshot(snapshot)
        if not inserted:
            logger.debug(
                "Duplicate history entry ignored for %s at %s",
                snapshot.account_id,
                snapshot.captured_at.isoformat(),
            )
        return inserted

    def clear(self) -> int:
        deleted = self.db.purge_history()
        logger.info("Cleared %d history entries", deleted)
        return deleted

    # -- reads ----------------------------------------------------------------

    def query(
        self,
        provider_id: Optional[str] = None,
        account_id: Optional[str] = None,
        start: TimeArg = None,
        end: TimeArg = None,
        limit: int = DEFAULT_QUERY_LIMIT,
        offset: int = 0,
    ) -> dict:
        """Filtered entries, newest first: ``{"entries": [...], "total": N}``."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if offset < 0:
            raise ValueError("offset must be >= 0")
        result = self.db.query_history(
            provider_id=provider_id,
            account_id=account_id,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
        return {"entries": result["rows"], "total": result["total"]}

    def stats(
        self,
        provider_id: Optional[str],
        limit_id: Optional[str],
        start: TimeArg = None,
        end: TimeArg = None,
        account_id: Optional[str] = None,
    ) -> Optional[dict]:
        """``{avg, max, min, count}`` for one limit, or None with no samples."""
        return self.db.history_stats(
            provider_id=provider_id,
            limit_id=limit_id,
            start=start,
            end=end,
            account_id=account_id,
        )

    # -- retention ------------------------------------------------------------

    def get_retention(self) -> HistoryRetention:
        return load_settings(self.db, RETENTION_KEY, HistoryRetention)

    def set_retention(self, policy: HistoryRetention) -> HistoryRetention:
        save_settings(self.db, RETENTION_KEY, policy)
        logger.info(
            "History retention set to %s days (auto_cleanup=%s)",
            policy.retention_days or "unlimited",
            policy.auto_cleanup,
        )
        return policy

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Purge entries older than the retention window.  Returns rows deleted."""
        policy = self.get_retention()
        now = now or datetime.now(timezone.utc)
        deleted = 0
        if policy.retention_days > 0:
            cutoff = now - timedelta(days=policy.retention_days)
            deleted = self.db.purge_history(before=cutoff)
        self.db.set_setting(LAST_CLEANUP_KEY, json.dumps(now.isoformat()))
        if deleted:
            logger.info("History cleanup removed %d entries", deleted)
        return deleted

    def metadata(self) -> dict:
        """Entry count, oldest/newest timestamps, last cleanup and retention."""
        bounds = self.db.history_bounds()
        raw = self.db.get_setting(LAST_CLEANUP_KEY)
        return {
            **bounds,
            "last_cleanup": json.loads(raw) if raw else None,
            "retention_days": self.get_retention().retention_days,
        }

    # -- export ---------------------------------------------------------------

    def export_json(
        self, provider_id: Optional[str] = None, account_id: Optional[str] = None
    ) -> str:
        return json.dumps(self.db.export_history(provider_id, account_id), indent=2)

    def export_csv(
        self, provider_id: Optional[str] = None, account_id: Optional[str] = None
    ) -> str:
        return self.db.export_history_csv(provider_id, account_id)
