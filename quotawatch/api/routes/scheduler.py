"""Scheduler control and notification settings routes."""

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from quotawatch.config import (
    NOTIFICATIONS_KEY,
    SCHEDULER_KEY,
    NotificationSettings,
    SchedulerConfig,
    save_settings,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class IntervalRequest(BaseModel):
    seconds: int = Field(gt=0)


def _status(request: Request) -> dict:
    scheduler = request.app.state.scheduler
    s = scheduler.get_status()
    return {
        "running": s["running"],
        "intervalSecs": s["interval_secs"],
        "lastFetch": s["last_fetch"],
        "config": scheduler.config.model_dump(),
    }


@router.get("/scheduler")
async def scheduler_status(request: Request):
    """``{running, intervalSecs, lastFetch}`` plus the active config."""
    return _status(request)


@router.post("/scheduler/start")
async def start_scheduler(request: Request):
    await request.app.state.scheduler.start()
    return _status(request)


@router.post("/scheduler/stop")
async def stop_scheduler(request: Request):
    await request.app.state.scheduler.stop()
    return _status(request)


@router.put("/scheduler/interval")
async def set_interval(body: IntervalRequest, request: Request):
    """Set the fixed-mode interval (clamped to the minimum interval)."""
    config = request.app.state.scheduler.set_interval(body.seconds)
    save_settings(request.app.state.db, SCHEDULER_KEY, config)
    return _status(request)


@router.put("/scheduler/config")
async def set_config(body: SchedulerConfig, request: Request):
    request.app.state.scheduler.set_config(body)
    save_settings(request.app.state.db, SCHEDULER_KEY, body)
    return _status(request)


@router.get("/settings/notifications", response_model=NotificationSettings)
async def get_notification_settings(request: Request):
    return request.app.state.scheduler.notifications.settings


@router.put("/settings/notifications", response_model=NotificationSettings)
async def set_notification_settings(body: NotificationSettings, request: Request):
    request.app.state.scheduler.notifications.update_settings(body)
    save_settings(request.app.state.db, NOTIFICATIONS_KEY, body)
    logger.info("Notification settings updated")
    return body
