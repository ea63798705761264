"""History routes: query, stats, metadata, retention, cleanup, export."""

from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from quotawatch.config import HistoryRetention

router = APIRouter()


def _get_history(request: Request):
    return request.app.state.history


def _start_from(start: Optional[str], days: Optional[int]) -> Optional[str]:
    """Explicit start wins; otherwise ``days`` back from now."""
    if start:
        return start
    if days:
        return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    return None


@router.get("")
async def query_history(
    request: Request,
    provider: Optional[str] = None,
    account: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    days: Optional[int] = Query(default=None, ge=1, le=3650),
    limit: int = Query(default=1000, ge=1, le=10000),
    offset: int = Query(default=0, ge=0),
):
    """Entries newest first: ``{"entries": [...], "total": N}``."""
    return _get_history(request).query(
        provider_id=provider,
        account_id=account,
        start=_start_from(start, days),
        end=end,
        limit=limit,
        offset=offset,
    )


@router.get("/stats")
async def history_stats(
    request: Request,
    limit_id: str = Query(alias="limitId"),
    provider: Optional[str] = None,
    account: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    days: Optional[int] = Query(default=None, ge=1, le=3650),
):
    """``{avg, max, min, count}`` or null when there are no samples."""
    return _get_history(request).stats(
        provider_id=provider,
        limit_id=limit_id,
        start=_start_from(start, days),
        end=end,
        account_id=account,
    )


@router.get("/metadata")
async def history_metadata(request: Request):
    meta = _get_history(request).metadata()
    return {
        "entryCount": meta["entry_count"],
        "oldest": meta["oldest"],
        "newest": meta["newest"],
        "lastCleanup": meta["last_cleanup"],
        "retentionDays": meta["retention_days"],
    }


@router.get("/retention", response_model=HistoryRetention)
async def get_retention(request: Request):
    return _get_history(request).get_retention()


@router.put("/retention", response_model=HistoryRetention)
async def set_retention(body: HistoryRetention, request: Request):
    return _get_history(request).set_retention(body)


@router.post("/cleanup")
async def cleanup_history(request: Request):
    return {"deleted": _get_history(request).cleanup()}


@router.delete("")
async def clear_history(request: Request):
    return {"deleted": _get_history(request).clear()}


@router.get("/export")
async def export_history(
    request: Request,
    format: Literal["json", "csv"] = "json",
    provider: Optional[str] = None,
    account: Optional[str] = None,
):
    history = _get_history(request)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    if format == "csv":
        body = history.export_csv(provider, account)
        media_type = "text/csv"
    else:
        body = history.export_json(provider, account)
        media_type = "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="quotawatch-history-{stamp}.{format}"'
        },
    )
