"""System routes: health, current status, manual refresh."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from quotawatch import __version__
from quotawatch.errors import RateLimitedError

router = APIRouter()


# --- Pydantic v2 response models ---

class HealthResponse(BaseModel):
    status: str
    version: str


class TrayResponse(BaseModel):
    level: Optional[str] = None
    percentage: Optional[int] = None
    tooltip: str


class StatusResponse(BaseModel):
    timestamp: str
    accounts: list[dict]
    tray: Optional[TrayResponse] = None


# --- Helpers ---

def _get_scheduler(request: Request):
    return request.app.state.scheduler


# --- Routes ---

@router.get("/health", response_model=HealthResponse)
async def health():
    """Liveness probe; never requires a token."""
    return HealthResponse(status="ok", version=__version__)


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    """Latest snapshot and session validity for every account."""
    scheduler = _get_scheduler(request)
    tray = getattr(request.app.state, "tray", None)
    return StatusResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        accounts=[scheduler.account_status(a.id) for a in scheduler.accounts()],
        tray=TrayResponse(**tray.to_dict()) if tray is not None else None,
    )


@router.get("/status/{account_id}")
async def get_account_status(account_id: str, request: Request):
    return _get_scheduler(request).account_status(account_id)


@router.post("/refresh")
async def refresh(request: Request):
    """Force a refresh of every account.

    Rate-limited calls get 429 with ``retryAfter`` (seconds) instead of an
    error envelope so clients can tell them apart from failures.
    """
    scheduler = _get_scheduler(request)
    try:
        result = await scheduler.force_refresh()
    except RateLimitedError as e:
        retry_after = round(e.retry_after, 1)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            headers={"Retry-After": str(max(1, int(e.retry_after + 0.999)))},
            content={
                "success": False,
                "message": f"Refresh rate limited, retry in {retry_after}s",
                "retryAfter": retry_after,
            },
        )
    return {
        "success": True,
        "message": f"Refreshed {len(result['refreshed'])} account(s)",
        "refreshed": result["refreshed"],
        "skipped": result["skipped"],
    }
