"""Pydantic schemas for calendar configurations."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class CalendarOut(BaseModel):
    calendar_id: str
    calendar_name: Optional[str] = None
    calendar_alias: str
    is_active: bool
    has_credential: bool = False
    webhook_id: Optional[str] = None
    webhook_resource_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CalendarToggle(BaseModel):
    is_active: Optional[bool] = None  # omitted → flip the current value
