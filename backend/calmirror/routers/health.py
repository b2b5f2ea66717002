"""Health check routes."""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calmirror.database import get_db
from calmirror.runtime import SyncRuntime, get_runtime

logger = logging.getLogger(__name__)
router = APIRouter()


def _database_ok(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        return False


@router.get("")
def health_check(db: Session = Depends(get_db)):
    ok = _database_ok(db)
    body = {
        "service": "CalMirror",
        "status": "healthy" if ok else "unhealthy",
        "database": "connected" if ok else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=200 if ok else 503)


@router.get("/detailed")
def detailed_health(runtime: SyncRuntime = Depends(get_runtime), db: Session = Depends(get_db)):
    ok = _database_ok(db)
    body = {
        "service": "CalMirror",
        "status": "healthy" if ok else "unhealthy",
        "database": "connected" if ok else "disconnected",
        "workers": "running" if runtime.queue.running else "stopped",
        "queue": runtime.queue.get_queue_status() if ok else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=200 if ok else 503)
