"""SyncLog ORM model: append-only audit trail of sync activity."""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Enum as SAEnum
from sqlalchemy.sql import func
from calmirror.database import Base


class LogStatus(str, enum.Enum):
    info = "info"
    success = "success"
    error = "error"


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    calendar_id = Column(String(255), nullable=True)
    event_id = Column(String(1024), nullable=True)
    status = Column(SAEnum(LogStatus), nullable=False)
    message = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
