import uuid
from datetime import datetime
from pydantic import BaseModel, Field

# ---- Requests ----

class ConsentRequestCreate(BaseModel):
    patient_id: uuid.UUID
    purpose: str = Field(..., max_length=2000)
    requested_scopes: list[str]
    duration_days: int | None = None
    message: str | None = Field(default=None, max_length=2000)

class ConsentApprove(BaseModel):
    granted_scopes: list[str] | None = None
    message: str | None = Field(default=None, max_length=2000)

class ConsentDeny(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)

class ConsentExtend(BaseModel):
    additional_days: int | None = None

class ConsentRequestOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    purpose: str
    requested_scopes: list[str]
    granted_scopes: list[str] | None
    duration_days: int
    status: str
    message: str | None
    response_message: str | None
    requested_at: datetime
    responded_at: datetime | None
    expires_at: datetime | None
    revoked_at: datetime | None
    version: int

    class Config:
        from_attributes = True

# ---- Grants ----

class AccessGrantOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    scope: str
    access_type: str
    status: str
    request_id: uuid.UUID
    granted_at: datetime
    expires_at: datetime
    revoked_at: datetime | None

    class Config:
        from_attributes = True

class AccessCheckOut(BaseModel):
    doctor_id: uuid.UUID
    patient_id: uuid.UUID
    scope: str | None = None
    access_type: str | None = None
    allowed: bool
