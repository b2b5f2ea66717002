"""Pydantic schemas for the sync audit log."""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class SyncLogOut(BaseModel):
    id: int
    event_type: str
    calendar_id: Optional[str] = None
    event_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    metadata: Optional[Any] = Field(default=None, validation_alias="metadata_")
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SyncLogPage(BaseModel):
    logs: list[SyncLogOut]
    total: int
    page: int
    limit: int
