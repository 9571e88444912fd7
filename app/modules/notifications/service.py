import uuid
import logging
from string import Template
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.errors import NotFoundError, UnauthorizedError
from app.modules.notifications.models import Notification
from app.modules.notifications.repository import NotificationRepository

log = logging.getLogger(__name__)

# type -> (title, body, action_url); bodies are rendered with string.Template
NOTIFICATION_TEMPLATES: dict[str, tuple[str, str, str]] = {
    "consent_request": (
        "New Consent Request",
        "A doctor has requested access to your $scopes records for $duration_days days. Purpose: $purpose",
        "/consent-management",
    ),
    "consent_approved": (
        "Consent Approved",
        "Your consent request has been approved for $scopes until $expires_at",
        "/doctor/consents",
    ),
    "consent_denied": (
        "Consent Denied",
        "Your consent request has been denied. $reason",
        "/doctor/consents",
    ),
    "consent_revoked": (
        "Consent Revoked",
        "The patient has revoked your access to $scopes records",
        "/doctor/consents",
    ),
    "consent_extended": (
        "Consent Extended",
        "Your access to $scopes records has been extended until $expires_at",
        "/doctor/consents",
    ),
    "consent_expired": (
        "Consent Expired",
        "Access to $scopes records expired on $expires_at",
        "/consent-management",
    ),
    "record_access_granted": (
        "Record Access Granted",
        "You now have access to the patient's $scopes records",
        "/patient-records",
    ),
    "record_access_revoked": (
        "Record Access Revoked",
        "Your access to the patient's $scopes records has been revoked",
        "/patient-records",
    ),
}

def render(kind: str, variables: dict | None) -> tuple[str, str, str | None]:
    try:
        title, body, action_url = NOTIFICATION_TEMPLATES[kind]
    except KeyError:
        raise ValueError(f"unknown notification type: {kind}")
    values = {k: ("" if v is None else v) for k, v in (variables or {}).items()}
    return title, Template(body).safe_substitute(values).strip(), action_url

class NotificationsService:
    def __init__(self, s: AsyncSession):
        self.s = s
        self.repo = NotificationRepository(s)

    async def emit(self, org: uuid.UUID, *, user_id: uuid.UUID, kind: str, subject_id: uuid.UUID | str,
                   variables: dict | None = None, subject_type: str = "consent_request") -> Notification:
        title, message, action_url = render(kind, variables)
        return await self.repo.create(
            org,
            user_id=user_id,
            type=kind,
            title=title,
            message=message,
            action_url=action_url,
            meta={k: str(v) for k, v in (variables or {}).items()},
            subject_type=subject_type,
            subject_id=str(subject_id),
        )

    async def emit_after_commit(self, org: uuid.UUID, events: Sequence[dict]) -> int:
        """Write notifications for an already-committed transition.

        Runs in its own session on the same engine, so a failure here cannot expire or
        roll back anything the caller holds. Failures are logged and swallowed.
        Returns the number of notifications written.
        """
        if not events:
            return 0
        async with AsyncSession(self.s.bind, expire_on_commit=False) as s:
            notes = NotificationsService(s)
            try:
                for ev in events:
                    await notes.emit(org, **ev)
                await s.commit()
            except Exception:
                log.exception("Notification emission failed; transition kept (org=%s, events=%s)", org, [e.get("kind") for e in events])
                await s.rollback()
                return 0
        return len(events)

    async def list_for_user(self, org: uuid.UUID, user_id: uuid.UUID, *, unread_only: bool = False, limit: int = 50):
        return await self.repo.list_for_user(org, user_id, unread_only=unread_only, limit=limit)

    async def mark_read(self, org: uuid.UUID, notification_id: uuid.UUID, user_id: uuid.UUID) -> Notification:
        n = await self.repo.get(org, notification_id)
        if not n:
            raise NotFoundError("notification", notification_id)
        if n.user_id != user_id:
            raise UnauthorizedError("Notifications can only be marked read by their recipient", actor_id=user_id)
        if not n.read:
            n.read = True
            await self.s.commit()
        return n

    async def mark_all_read(self, org: uuid.UUID, user_id: uuid.UUID) -> int:
        count = await self.repo.mark_all_read(org, user_id)
        await self.s.commit()
        return count

    async def unread_count(self, org: uuid.UUID, user_id: uuid.UUID) -> int:
        return await self.repo.unread_count(org, user_id)
