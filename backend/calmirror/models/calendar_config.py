"""CalendarConfig ORM model: one managed calendar account."""
from sqlalchemy import Column, String, Boolean, DateTime, Text
from sqlalchemy.sql import func
from calmirror.database import Base


class CalendarConfig(Base):
    __tablename__ = "calendar_configs"

    calendar_id = Column(String(255), primary_key=True)
    calendar_name = Column(String(255), nullable=True)
    calendar_alias = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # Opaque credential reference owned by the auth flow (an OAuth refresh token)
    refresh_token = Column(Text, nullable=True)
    webhook_id = Column(String(255), nullable=True)
    webhook_resource_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_credential(self) -> bool:
        return bool(self.refresh_token)
