"""Pydantic schemas for sync job requests."""
from pydantic import BaseModel


class ManualSyncRequest(BaseModel):
    event_id: str
