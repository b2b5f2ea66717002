"""Push-notification receiver and manual resync endpoints."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from calmirror.errors import CalendarNotFoundError, ProviderAuthError, ProviderNotFoundError
from calmirror.runtime import SyncRuntime, get_runtime
from calmirror.schemas.sync_job import ManualSyncRequest
from calmirror.services.change_detector import BlockEventSyncError

logger = logging.getLogger(__name__)
router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.post("/calendar/{calendar_id}")
def receive_notification(
    calendar_id: str,
    x_goog_channel_id: Optional[str] = Header(None),
    x_goog_resource_id: Optional[str] = Header(None),
    x_goog_resource_state: Optional[str] = Header(None),
    runtime: SyncRuntime = Depends(get_runtime),
):
    """Handle a Google Calendar push notification for ``calendar_id``."""
    if not x_goog_channel_id or not x_goog_resource_id:
        logger.info("Invalid webhook headers received for %s", calendar_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook headers")

    runtime.store.log_sync_activity(
        "webhook_received", calendar_id, None, "info", "Webhook notification received",
        {"channelId": x_goog_channel_id, "resourceId": x_goog_resource_id, "resourceState": x_goog_resource_state},
    )
    try:
        result = runtime.detector.handle_notification(calendar_id, x_goog_resource_state)
    except CalendarNotFoundError:
        logger.info("Calendar %s not found or inactive", calendar_id)
        raise HTTPException(status_code=404, detail="Calendar not found or inactive")
    except ProviderAuthError:
        logger.error("Authentication failed for calendar %s", calendar_id)
        raise HTTPException(status_code=401, detail="Calendar authentication failed")
    except Exception as exc:
        logger.exception("Webhook processing error for %s", calendar_id)
        runtime.store.log_sync_activity("webhook_error", calendar_id, None, "error", f"Webhook error: {exc}")
        raise HTTPException(status_code=500, detail={"error": str(exc), "timestamp": _now()})

    if result.acknowledged_only:
        return {"message": "Sync acknowledged"}
    return {
        "message": "Webhook processed successfully",
        "calendar": calendar_id,
        "jobsQueued": len(result.jobs),
        "timestamp": _now(),
    }


@router.get("/verify/{calendar_id}")
def verify_endpoint(calendar_id: str):
    return {
        "message": "Webhook endpoint verified",
        "calendar": calendar_id,
        "service": "CalMirror",
        "timestamp": _now(),
    }


@router.post("/manual-sync/{calendar_id}")
def manual_sync(calendar_id: str, payload: ManualSyncRequest, runtime: SyncRuntime = Depends(get_runtime)):
    """Queue a high-priority resync of one event."""
    logger.info("Manual sync requested for event %s from calendar %s", payload.event_id, calendar_id)
    try:
        job = runtime.detector.request_manual_sync(calendar_id, payload.event_id)
    except CalendarNotFoundError:
        raise HTTPException(status_code=404, detail="Calendar not found or inactive")
    except ProviderNotFoundError:
        raise HTTPException(status_code=404, detail="Event not found")
    except BlockEventSyncError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProviderAuthError:
        raise HTTPException(status_code=401, detail="Calendar authentication failed")

    return {
        "message": "Manual sync queued successfully",
        "jobId": job.job_id,
        "eventId": payload.event_id,
        "calendar": calendar_id,
        "timestamp": _now(),
    }
