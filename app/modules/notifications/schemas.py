import uuid
from datetime import datetime
from pydantic import BaseModel

class NotificationOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    message: str
    action_url: str | None
    meta: dict | None
    read: bool
    subject_type: str
    subject_id: str
    occurred_at: datetime
    class Config: from_attributes = True

class UnreadCount(BaseModel):
    unread: int

class MarkAllReadResult(BaseModel):
    updated: int
