"""FastAPI application: scheduler host + local REST API."""

import asyncio
import json
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from quotawatch import __version__
from quotawatch.api.websocket import WebSocketRegistry
from quotawatch.config import (
    NOTIFICATIONS_KEY,
    SCHEDULER_KEY,
    NotificationSettings,
    SchedulerConfig,
    ServerSettings,
    load_settings,
)
from quotawatch.errors import AccountNotFoundError, RateLimitedError
from quotawatch.events import EventBus
from quotawatch.history import HistoryStore
from quotawatch.models import Account, Credentials
from quotawatch.notifications import DesktopNotifier, NotificationEngine, Notifier
from quotawatch.providers import ProviderRegistry, default_registry
from quotawatch.scheduler import SchedulerLoop
from quotawatch.tray import TrayState
from quotawatch.web.database import Database

logger = logging.getLogger(__name__)

HISTORY_CLEANUP_INTERVAL = 86400  # 24 hours
WS_KEEPALIVE_INTERVAL = 30  # seconds between WebSocket pings


def init_app_state(
    app: FastAPI,
    db: Database,
    registry: Optional[ProviderRegistry] = None,
    notifier: Optional[Notifier] = None,
    api_token: Optional[str] = None,
    **scheduler_kwargs,
) -> SchedulerLoop:
    """Wire database, event bus, engines and scheduler onto ``app.state``.

    Loads every stored account into the scheduler.  Does not start it.
    """

    def load_credentials(account_id: str) -> Optional[Credentials]:
        data = db.get_credentials(account_id)
        return Credentials(**data) if data else None

    bus = EventBus()
    history = HistoryStore(db)
    engine = NotificationEngine(
        load_settings(db, NOTIFICATIONS_KEY, NotificationSettings),
        notifier=notifier,
        publish=bus.publish,
    )
    scheduler = SchedulerLoop(
        registry or default_registry(),
        load_credentials,
        config=load_settings(db, SCHEDULER_KEY, SchedulerConfig),
        bus=bus,
        notifications=engine,
        history=history,
        **scheduler_kwargs,
    )
    tray = TrayState(bus)
    for row in db.list_accounts():
        scheduler.add_account(Account(**row))
        tray.set_account_name(row["id"], row["display_name"])

    app.state.db = db
    app.state.bus = bus
    app.state.history = history
    app.state.registry = scheduler.registry
    app.state.scheduler = scheduler
    app.state.tray = tray
    app.state.api_token = api_token
    app.state.ws_registry = WebSocketRegistry()
    return scheduler


async def _history_cleanup_loop(app: FastAPI):
    """Apply the retention policy at startup and then once a day."""
    while True:
        try:
            history: HistoryStore = app.state.history
            if history.get_retention().auto_cleanup:
                deleted = await asyncio.to_thread(history.cleanup)
                if deleted:
                    logger.info("History cleanup: removed %d entries", deleted)
        except Exception as e:
            logger.warning("History cleanup error: %s", e)
        await asyncio.sleep(HISTORY_CLEANUP_INTERVAL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    settings = ServerSettings.from_env()
    try:
        db = Database(settings.db_path)
        logger.info("Database initialized at %s", db.db_path)
    except Exception as e:
        logger.warning("Database init failed (%s), using in-memory store", e)
        db = Database(":memory:")

    scheduler = init_app_state(
        app, db, notifier=DesktopNotifier(), api_token=settings.api_token
    )
    app.state.host = settings.host
    app.state.port = settings.port
    if settings.host == "0.0.0.0" and not settings.api_token:
        logger.warning("API exposed to network without QUOTAWATCH_API_TOKEN")

    registry: WebSocketRegistry = app.state.ws_registry
    subscription = app.state.bus.subscribe()
    pump_task = asyncio.create_task(registry.pump(subscription))
    cleanup_task = asyncio.create_task(_history_cleanup_loop(app))
    await scheduler.start()

    yield

    await scheduler.stop()
    subscription.close()
    for task in (pump_task, cleanup_task):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    app.state.tray.close()
    app.state.bus.close()
    try:
        db.close()
    except Exception as e:
        logger.debug("Database close failed: %s", e)


app = FastAPI(
    title="quotawatch",
    description="Local API for usage monitoring, history and scheduler control.",
    version=__version__,
    lifespan=lifespan,
)


# --- Token auth ---


@app.middleware("http")
async def token_auth(request: Request, call_next):
    """Require ``Authorization: Bearer <token>`` when a token is configured."""
    token = getattr(request.app.state, "api_token", None)
    if token and request.url.path != "/health":
        header = request.headers.get("authorization", "")
        if not secrets.compare_digest(header, f"Bearer {token}"):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": {"message": "Invalid or missing token", "code": "UNAUTHORIZED"}},
            )
    return await call_next(request)


# --- Exception handlers ---


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": {"message": str(exc), "code": "VALIDATION_ERROR"}},
    )


@app.exception_handler(AccountNotFoundError)
async def not_found_handler(request: Request, exc: AccountNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": {"message": str(exc), "code": "NOT_FOUND"}},
    )


@app.exception_handler(RateLimitedError)
async def rate_limited_handler(request: Request, exc: RateLimitedError):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={"Retry-After": str(max(1, int(exc.retry_after + 0.999)))},
        content={"error": {"message": str(exc), "code": "RATE_LIMITED"}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {"message": "An internal error occurred", "code": "INTERNAL_ERROR"}
        },
    )


# --- WebSocket event stream ---


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """Stream EventBus events.

    ``/ws?topics=usage-update,session-status`` narrows the stream; the
    default is ``*``.  When a token is configured it must be passed as
    ``?token=``.
    """
    token = getattr(app.state, "api_token", None)
    if token and not secrets.compare_digest(ws.query_params.get("token", ""), token):
        await ws.close(code=4001, reason="Unauthorized")
        return

    await ws.accept()
    raw_topics = ws.query_params.get("topics", "*")
    topics = [t.strip() for t in raw_topics.split(",") if t.strip()] or ["*"]

    registry: WebSocketRegistry = app.state.ws_registry
    await registry.connect(ws, topics)
    logger.debug("WebSocket client connected (topics=%s, total=%d)", topics, registry.client_count)

    async def _keepalive():
        while True:
            await asyncio.sleep(WS_KEEPALIVE_INTERVAL)
            try:
                await ws.send_text(json.dumps({"type": "ping"}))
            except Exception:
                break

    keepalive_task = asyncio.create_task(_keepalive())
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        keepalive_task.cancel()
        try:
            await keepalive_task
        except asyncio.CancelledError:
            pass
        registry.disconnect(ws)
        logger.debug("WebSocket client disconnected (total=%d)", registry.client_count)


# --- Include route modules ---

from quotawatch.api.routes import accounts, history, scheduler, system  # noqa: E402

app.include_router(system.router, tags=["system"])
app.include_router(accounts.router, tags=["accounts"])
app.include_router(history.router, prefix="/history", tags=["history"])
app.include_router(scheduler.router, tags=["scheduler"])
