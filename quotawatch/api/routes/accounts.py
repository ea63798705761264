"""Account routes: CRUD, credentials, resume, connection test, session state."""

import logging
from typing import Optional

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from quotawatch.errors import AccountNotFoundError
from quotawatch.models import Account, Credentials
from quotawatch.providers import test_connection

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Pydantic v2 request models ---

class AccountCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    provider: str = "claude"
    credentials: Optional[Credentials] = None


class AccountUpdateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)


# --- Helpers ---

def _account_response(request: Request, row: dict) -> dict:
    scheduler = request.app.state.scheduler
    session = scheduler.tracker.get(row["id"])
    return {
        "id": row["id"],
        "name": row["display_name"],
        "provider": row["provider_id"],
        "createdAt": row.get("created_at"),
        "hasCredentials": request.app.state.db.get_credentials(row["id"]) is not None,
        "session": session.model_dump(by_alias=True, mode="json"),
    }


def _require_account(request: Request, account_id: str) -> dict:
    row = request.app.state.db.get_account(account_id)
    if row is None:
        raise AccountNotFoundError(account_id)
    return row


# --- Routes ---

@router.get("/accounts")
async def list_accounts(request: Request):
    return [_account_response(request, row) for row in request.app.state.db.list_accounts()]


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(body: AccountCreateRequest, request: Request):
    """Create an account, optionally with credentials, and start polling it."""
    state = request.app.state
    provider = state.registry.get(body.provider)
    if body.credentials is not None and not provider.validate(body.credentials):
        raise ValueError(f"Invalid credentials for provider {body.provider}")

    row = state.db.create_account(body.name, provider.id)
    if body.credentials is not None:
        state.db.save_credentials(row["id"], body.credentials.model_dump())
    state.scheduler.add_account(Account(**row))
    state.tray.set_account_name(row["id"], row["display_name"])
    logger.info("Account %s created (%s)", row["id"], provider.id)
    return _account_response(request, row)


@router.patch("/accounts/{account_id}")
async def rename_account(account_id: str, body: AccountUpdateRequest, request: Request):
    state = request.app.state
    _require_account(request, account_id)
    state.db.update_account(account_id, display_name=body.name.strip())
    row = state.db.get_account(account_id)
    state.scheduler.update_account(Account(**row))
    state.tray.set_account_name(account_id, row["display_name"])
    return _account_response(request, row)


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: str, request: Request):
    """Delete an account and clear its scheduler, session and notification state."""
    state = request.app.state
    if not state.db.delete_account(account_id):
        raise AccountNotFoundError(account_id)
    state.scheduler.remove_account(account_id)
    state.tray.forget(account_id)
    return {"success": True, "id": account_id}


@router.put("/accounts/{account_id}/credentials")
async def save_credentials(account_id: str, body: Credentials, request: Request):
    """Store new credentials; a paused account resumes and is fetched right away."""
    state = request.app.state
    row = _require_account(request, account_id)
    provider = state.registry.get(row["provider_id"])
    if not provider.validate(body):
        raise ValueError(f"Invalid credentials for provider {row['provider_id']}")
    state.db.save_credentials(account_id, body.model_dump())
    session = state.scheduler.save_credentials(account_id)
    return session.model_dump(by_alias=True, mode="json")


@router.post("/accounts/{account_id}/resume")
async def resume_account(account_id: str, request: Request):
    _require_account(request, account_id)
    session = request.app.state.scheduler.resume(account_id)
    return session.model_dump(by_alias=True, mode="json")


@router.post("/accounts/{account_id}/test")
async def test_account(
    account_id: str, request: Request, body: Optional[Credentials] = None
):
    """Try one fetch with the given (or stored) credentials."""
    state = request.app.state
    row = _require_account(request, account_id)
    provider = state.registry.get(row["provider_id"])
    credentials = body
    if credentials is None:
        stored = state.db.get_credentials(account_id)
        credentials = Credentials(**stored) if stored else Credentials()
    return await test_connection(provider, credentials)


@router.get("/sessions/{account_id}")
async def get_session(account_id: str, request: Request):
    session = request.app.state.scheduler.get_session_status(account_id)
    return session.model_dump(by_alias=True, mode="json")
