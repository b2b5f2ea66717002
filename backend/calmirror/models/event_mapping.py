"""EventMapping and BlockEvent ORM models.

An EventMapping tracks one source event; each BlockEvent is the placeholder
generated from it on one target calendar.
"""
import uuid
import enum
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Text, UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from calmirror.database import Base


class SyncStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class EventMapping(Base):
    __tablename__ = "event_mappings"
    __table_args__ = (
        UniqueConstraint("original_event_id", "original_calendar_id", name="uq_event_mappings_source"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    original_event_id = Column(String(1024), nullable=False)
    original_calendar_id = Column(String(255), nullable=False)
    original_summary = Column(Text, nullable=True)
    event_start = Column(DateTime(timezone=True), nullable=True)
    event_end = Column(DateTime(timezone=True), nullable=True)
    sync_status = Column(SAEnum(SyncStatus), nullable=False, default=SyncStatus.pending)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    block_events = relationship(
        "BlockEvent",
        back_populates="mapping",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BlockEvent(Base):
    __tablename__ = "block_events"
    __table_args__ = (
        UniqueConstraint("mapping_id", "target_calendar_id", name="uq_block_events_target"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    mapping_id = Column(String(36), ForeignKey("event_mappings.id", ondelete="CASCADE"), nullable=False)
    block_event_id = Column(String(1024), nullable=False)
    target_calendar_id = Column(String(255), nullable=False)
    block_title = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    mapping = relationship("EventMapping", back_populates="block_events")
