"""FastAPI application entry point."""
import logging

from fastapi import FastAPI

from calmirror.config import settings
from calmirror.database import Base, SessionLocal, engine
from calmirror.runtime import build_runtime

# Import routers
from calmirror.routers import admin, health, webhooks

# Import all models so Base.metadata knows about them
import calmirror.models  # noqa: F401

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CalMirror",
    description="Keeps several calendars mutually busy with private block events",
    version="0.1.0",
)

# Register routers
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
app.include_router(health.router, prefix="/api/health", tags=["Health"])


@app.on_event("startup")
def on_startup():
    """Create tables (SQLite dev mode), wire the sync engine, start workers."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(SessionLocal)
    if settings.QUEUE_AUTOSTART:
        app.state.runtime.queue.start()
    logger.info("CalMirror started")


@app.on_event("shutdown")
def on_shutdown():
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        runtime.queue.stop()
