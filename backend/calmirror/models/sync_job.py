"""SyncJob ORM model: a durable entry in the sync job queue."""
import uuid
import enum
from sqlalchemy import Column, String, DateTime, Integer, JSON, Text, Enum as SAEnum, Index
from sqlalchemy.sql import func
from calmirror.database import Base


class JobState(str, enum.Enum):
    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_claim", "state", "priority", "run_after"),
    )

    job_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(50), nullable=False, default="syncEvent")
    event_data = Column(JSON, nullable=False)
    source_calendar_id = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False, default=10)
    state = Column(SAEnum(JobState), nullable=False, default=JobState.waiting)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_after = Column(DateTime(timezone=True), nullable=False)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
