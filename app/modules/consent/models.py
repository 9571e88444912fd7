import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, TIMESTAMP, JSON, ForeignKey, Index, text
from app.core.base import Base, TimestampedTenantMixin

class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    REVOKED = "revoked"
    EXPIRED = "expired"

class GrantStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"

class ConsentRequest(Base, TimestampedTenantMixin):
    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    doctor_id: Mapped[uuid.UUID] = mapped_column(index=True)
    purpose: Mapped[str] = mapped_column(Text)
    requested_scopes: Mapped[list] = mapped_column(JSON)  # sorted, deduplicated RecordType values
    granted_scopes: Mapped[list | None] = mapped_column(JSON, nullable=True)  # set on approval
    duration_days: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default=RequestStatus.PENDING.value)  # pending | approved | denied | revoked | expired
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    responded_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    revoked_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_consentrequest_status_expires", "status", "expires_at"),
    )

class AccessGrant(Base, TimestampedTenantMixin):
    patient_id: Mapped[uuid.UUID] = mapped_column()
    doctor_id: Mapped[uuid.UUID] = mapped_column()
    scope: Mapped[str] = mapped_column(String(32))         # one RecordType value, never a set
    access_type: Mapped[str] = mapped_column(String(32))   # view_records | view_prescriptions | view_consultation_notes | all
    status: Mapped[str] = mapped_column(String(16), default=GrantStatus.ACTIVE.value)  # active | revoked | expired
    request_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("consentrequest.id"), index=True)

    granted_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    revoked_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_accessgrant_lookup", "patient_id", "doctor_id", "scope", "status"),
        Index("ix_accessgrant_status_expires", "status", "expires_at"),
        # at most one live grant per (tenant, patient, doctor, scope)
        Index(
            "uq_accessgrant_active_key", "org_id", "patient_id", "doctor_id", "scope",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
