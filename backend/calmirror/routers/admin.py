"""Admin API routes: calendar activation and push channels, audit log browsing, statistics."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from calmirror.config import settings
from calmirror.database import get_db
from calmirror.errors import CalendarNotFoundError, ConfigurationError, ProviderAuthError, ProviderError
from calmirror.models.calendar_config import CalendarConfig
from calmirror.models.event_mapping import BlockEvent, EventMapping
from calmirror.models.sync_log import LogStatus, SyncLog
from calmirror.runtime import SyncRuntime, get_runtime
from calmirror.schemas.calendar import CalendarOut, CalendarToggle
from calmirror.schemas.sync_log import SyncLogPage
from calmirror.services.calendar_registry import register_watch, set_calendar_active

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/calendars", response_model=list[CalendarOut])
def list_calendars(db: Session = Depends(get_db)):
    """All configured calendars, active or not, ordered by alias."""
    return db.query(CalendarConfig).order_by(CalendarConfig.calendar_alias).all()


@router.post("/calendars/{calendar_id}/toggle", response_model=CalendarOut)
def toggle_calendar(
    calendar_id: str,
    payload: Optional[CalendarToggle] = None,
    runtime: SyncRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Activate or deactivate a calendar; without a body the flag is flipped."""
    row = db.query(CalendarConfig).filter(CalendarConfig.calendar_id == calendar_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Calendar not found")
    active = payload.is_active if payload and payload.is_active is not None else not row.is_active
    try:
        row = set_calendar_active(db, calendar_id, active)
    except CalendarNotFoundError:
        raise HTTPException(status_code=404, detail="Calendar not found")
    runtime.store.log_sync_activity(
        "calendar_toggled", calendar_id, None, "info",
        f"Calendar {row.calendar_alias} {'activated' if active else 'deactivated'}",
    )
    return row


@router.post("/calendars/{calendar_id}/watch", response_model=CalendarOut)
def watch_calendar(
    calendar_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Open a Google push channel for the calendar and store its ids."""
    try:
        row = register_watch(db, runtime.provider, calendar_id, settings.WEBHOOK_BASE_URL, settings.WEBHOOK_TTL_SECONDS)
    except CalendarNotFoundError:
        raise HTTPException(status_code=404, detail="Calendar not found")
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProviderAuthError:
        raise HTTPException(status_code=401, detail="Calendar authentication failed")
    except ProviderError as exc:
        runtime.store.log_sync_activity("webhook_setup_failed", calendar_id, None, "error", f"Webhook setup failed: {exc}")
        raise HTTPException(status_code=502, detail=str(exc))
    runtime.store.log_sync_activity(
        "webhook_registered", calendar_id, None, "success", "Push channel opened",
        {"channelId": row.webhook_id, "resourceId": row.webhook_resource_id},
    )
    return row


@router.get("/logs", response_model=SyncLogPage)
def list_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    status_filter: Optional[LogStatus] = Query(None, alias="status"),
    event_type: Optional[str] = Query(None),
    calendar_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Newest-first page of the audit log with optional filters."""
    query = db.query(SyncLog)
    if status_filter:
        query = query.filter(SyncLog.status == status_filter)
    if event_type:
        query = query.filter(SyncLog.event_type == event_type)
    if calendar_id:
        query = query.filter(SyncLog.calendar_id == calendar_id)
    total = query.count()
    logs = (
        query.order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"logs": logs, "total": total, "page": page, "limit": limit}


@router.get("/stats")
def stats(runtime: SyncRuntime = Depends(get_runtime), db: Session = Depends(get_db)):
    """Mapping, placeholder and last-24h audit counts plus queue status."""
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    mappings = dict(
        db.query(EventMapping.sync_status, func.count()).group_by(EventMapping.sync_status).all()
    )
    recent = dict(
        db.query(SyncLog.status, func.count())
        .filter(SyncLog.created_at >= since)
        .group_by(SyncLog.status)
        .all()
    )
    return {
        "calendars": {
            "total": db.query(CalendarConfig).count(),
            "active": db.query(CalendarConfig).filter(CalendarConfig.is_active.is_(True)).count(),
        },
        "mappings": {status.value: count for status, count in mappings.items()},
        "block_events": db.query(BlockEvent).count(),
        "logs_last_24h": {status.value: count for status, count in recent.items()},
        "queue": runtime.queue.get_queue_status(),
    }
