import uuid
import logging
from datetime import datetime, timedelta
from typing import Iterable, Sequence
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.base import utcnow, as_utc
from app.core.config import settings
from app.core.errors import NotFoundError, UnauthorizedError, InvalidTransitionError, ValidationError
from app.modules.consent.models import ConsentRequest, AccessGrant, RequestStatus, GrantStatus
from app.modules.consent.repository import ConsentRequestRepository, AccessGrantRepository
from app.modules.consent.schemas import ConsentRequestCreate
from app.modules.consent.scopes import RECORD_TYPE_VALUES, RecordType, AccessType, access_type_for, normalize_scopes
from app.modules.notifications.service import NotificationsService

log = logging.getLogger(__name__)

def scope_label(scopes: Iterable[str]) -> str:
    return ", ".join(s.replace("_", " ") for s in scopes)

def _enum_value(value: str | RecordType | AccessType) -> str:
    return value.value if isinstance(value, (RecordType, AccessType)) else str(value)

def _validate_days(value: int | None, field: str) -> int:
    if value is None or isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value <= 0:
        raise ValidationError(f"{field} must be positive", field=field)
    if value > settings.CONSENT_MAX_DURATION_DAYS:
        raise ValidationError(f"{field} must be at most {settings.CONSENT_MAX_DURATION_DAYS}", field=field)
    return value

def _validate_scopes(scopes: Iterable[str] | None, field: str) -> list[str]:
    normalized = normalize_scopes(scopes or [])
    if not normalized:
        raise ValidationError(f"{field} must contain at least one scope", field=field)
    unknown = [s for s in normalized if s not in RECORD_TYPE_VALUES]
    if unknown:
        raise ValidationError(f"unknown scope(s): {', '.join(unknown)}", field=field)
    return normalized

class ConsentService:
    """Consent request lifecycle and the access grants it materializes.

    Every mutating call is one transaction: the request status write and all grant
    writes it implies commit together or not at all. Notifications are written after
    the commit and never undo it.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.requests = ConsentRequestRepository(session)
        self.grants = AccessGrantRepository(session)
        self.notifications = NotificationsService(session)

    # ---- helpers ----
    async def _load(self, org_id: uuid.UUID, request_id: uuid.UUID) -> ConsentRequest:
        obj = await self.requests.get(org_id, request_id)
        if not obj:
            raise NotFoundError("consent_request", request_id)
        return obj

    async def _lost_race(self, org_id: uuid.UUID, request_id: uuid.UUID, action: str, expected: RequestStatus):
        current = await self.requests.get(org_id, request_id)
        await self.session.rollback()
        log.info("Consent %s lost a race on request=%s (now %s)", action, request_id, current.status if current else None)
        raise InvalidTransitionError(action, current.status if current else None, expected.value)

    @staticmethod
    def _require_patient(req: ConsentRequest, actor_id: uuid.UUID):
        if req.patient_id != actor_id:
            raise UnauthorizedError(actor_id=actor_id)

    @staticmethod
    def _require_status(req: ConsentRequest, action: str, expected: RequestStatus):
        if req.status != expected.value:
            raise InvalidTransitionError(action, req.status, expected.value)

    async def _notify(self, org_id: uuid.UUID, events: list[dict]) -> None:
        await self.notifications.emit_after_commit(org_id, events)

    # ---- Requests ----
    async def create_request(self, org_id: uuid.UUID, doctor_id: uuid.UUID, payload: ConsentRequestCreate) -> ConsentRequest:
        scopes = _validate_scopes(payload.requested_scopes, "requested_scopes")
        duration = payload.duration_days if payload.duration_days is not None else settings.CONSENT_DEFAULT_DURATION_DAYS
        duration = _validate_days(duration, "duration_days")
        purpose = (payload.purpose or "").strip()
        if not purpose:
            raise ValidationError("purpose must not be blank", field="purpose")
        if payload.patient_id == doctor_id:
            raise ValidationError("a doctor cannot request consent from themselves", field="patient_id")

        obj = await self.requests.create(
            org_id,
            patient_id=payload.patient_id,
            doctor_id=doctor_id,
            purpose=purpose,
            requested_scopes=scopes,
            duration_days=duration,
            status=RequestStatus.PENDING.value,
            message=payload.message,
            requested_at=utcnow(),
        )
        await self.session.commit()
        log.info("Consent request created id=%s doctor=%s patient=%s scopes=%s", obj.id, doctor_id, obj.patient_id, scopes)
        await self._notify(org_id, [{
            "user_id": obj.patient_id,
            "kind": "consent_request",
            "subject_id": obj.id,
            "variables": {"scopes": scope_label(scopes), "duration_days": duration, "purpose": purpose, "doctor_id": doctor_id},
        }])
        return obj

    async def get_request(self, org_id: uuid.UUID, request_id: uuid.UUID) -> ConsentRequest:
        return await self._load(org_id, request_id)

    async def list_for_patient(self, org_id: uuid.UUID, patient_id: uuid.UUID, *, status: str | None = None, limit: int = 100, offset: int = 0):
        return await self.requests.list_for_patient(org_id, patient_id, status=status, limit=limit, offset=offset)

    async def list_for_doctor(self, org_id: uuid.UUID, doctor_id: uuid.UUID, *, status: str | None = None, limit: int = 100, offset: int = 0):
        return await self.requests.list_for_doctor(org_id, doctor_id, status=status, limit=limit, offset=offset)

    # ---- Responses ----
    async def approve(self, org_id: uuid.UUID, request_id: uuid.UUID, patient_id: uuid.UUID, *,
                      granted_scopes: list[str] | None = None, message: str | None = None) -> ConsentRequest:
        try:
            req = await self._load(org_id, request_id)
            self._require_patient(req, patient_id)
            self._require_status(req, "approve", RequestStatus.PENDING)

            requested = list(req.requested_scopes or [])
            if granted_scopes is None:
                granted = requested
            else:
                granted = _validate_scopes(granted_scopes, "granted_scopes")
                extra = [s for s in granted if s not in requested]
                if extra:
                    raise ValidationError(f"granted scope(s) not requested: {', '.join(extra)}", field="granted_scopes")

            now = utcnow()
            expires_at = now + timedelta(days=req.duration_days)
            ok = await self.requests.transition(
                org_id, request_id, RequestStatus.PENDING,
                status=RequestStatus.APPROVED.value,
                responded_at=now,
                expires_at=expires_at,
                granted_scopes=granted,
                response_message=message,
            )
            if not ok:
                await self._lost_race(org_id, request_id, "approve", RequestStatus.PENDING)

            # fan-out: one grant row per scope, so access checks are a plain key lookup
            for scope in granted:
                _, created = await self.grants.upsert_active(
                    org_id,
                    patient_id=req.patient_id,
                    doctor_id=req.doctor_id,
                    scope=scope,
                    access_type=access_type_for(scope).value,
                    request_id=req.id,
                    granted_at=now,
                    expires_at=expires_at,
                )
                if not created:
                    log.debug("Re-pointed existing active grant scope=%s to request=%s", scope, req.id)
            await self.session.commit()
        except IntegrityError:
            # a concurrent approval for the same (patient, doctor, scope) won the active-grant slot
            await self.session.rollback()
            log.warning("Active grant conflict while approving request=%s", request_id)
            raise InvalidTransitionError("approve", "conflict", RequestStatus.PENDING.value)
        except Exception:
            await self.session.rollback()
            raise

        req = await self._load(org_id, request_id)
        log.info("Consent approved id=%s patient=%s doctor=%s scopes=%s expires_at=%s", req.id, req.patient_id, req.doctor_id, granted, req.expires_at)
        variables = {"scopes": scope_label(granted), "expires_at": req.expires_at.isoformat(), "patient_id": req.patient_id}
        await self._notify(org_id, [
            {"user_id": req.doctor_id, "kind": "consent_approved", "subject_id": req.id, "variables": variables},
            {"user_id": req.doctor_id, "kind": "record_access_granted", "subject_id": req.id, "variables": variables},
        ])
        return req

    async def deny(self, org_id: uuid.UUID, request_id: uuid.UUID, patient_id: uuid.UUID, reason: str | None = None) -> ConsentRequest:
        try:
            req = await self._load(org_id, request_id)
            self._require_patient(req, patient_id)
            self._require_status(req, "deny", RequestStatus.PENDING)
            ok = await self.requests.transition(
                org_id, request_id, RequestStatus.PENDING,
                status=RequestStatus.DENIED.value,
                responded_at=utcnow(),
                response_message=reason,
            )
            if not ok:
                await self._lost_race(org_id, request_id, "deny", RequestStatus.PENDING)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        req = await self._load(org_id, request_id)
        log.info("Consent denied id=%s patient=%s doctor=%s", req.id, req.patient_id, req.doctor_id)
        await self._notify(org_id, [{
            "user_id": req.doctor_id,
            "kind": "consent_denied",
            "subject_id": req.id,
            "variables": {"reason": f"Reason: {reason}" if reason else "", "patient_id": req.patient_id},
        }])
        return req

    async def revoke(self, org_id: uuid.UUID, request_id: uuid.UUID, patient_id: uuid.UUID) -> ConsentRequest:
        try:
            req = await self._load(org_id, request_id)
            self._require_patient(req, patient_id)
            self._require_status(req, "revoke", RequestStatus.APPROVED)
            now = utcnow()
            ok = await self.requests.transition(
                org_id, request_id, RequestStatus.APPROVED,
                status=RequestStatus.REVOKED.value,
                revoked_at=now,
                revoked_by=patient_id,
            )
            if not ok:
                await self._lost_race(org_id, request_id, "revoke", RequestStatus.APPROVED)
            scopes = list(req.granted_scopes or req.requested_scopes or [])
            revoked = await self.grants.revoke_for_scopes(org_id, req.patient_id, req.doctor_id, scopes, now)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        req = await self._load(org_id, request_id)
        log.info("Consent revoked id=%s patient=%s doctor=%s grants_revoked=%s", req.id, req.patient_id, req.doctor_id, revoked)
        await self._notify(org_id, [{
            "user_id": req.doctor_id,
            "kind": "consent_revoked",
            "subject_id": req.id,
            "variables": {"scopes": scope_label(scopes), "patient_id": req.patient_id},
        }])
        return req

    async def extend(self, org_id: uuid.UUID, request_id: uuid.UUID, additional_days: int | None = None,
                     acting_id: uuid.UUID | None = None) -> ConsentRequest:
        days = _validate_days(
            additional_days if additional_days is not None else settings.CONSENT_DEFAULT_EXTENSION_DAYS,
            "additional_days",
        )
        try:
            req = await self._load(org_id, request_id)
            if acting_id is not None:
                self._require_patient(req, acting_id)
            self._require_status(req, "extend", RequestStatus.APPROVED)
            now = utcnow()
            current = as_utc(req.expires_at) or now
            # measured from the later of now / current expiry so a lapsed-but-unswept request never shrinks
            new_expiry = max(current, now) + timedelta(days=days)
            ok = await self.requests.transition(
                org_id, request_id, RequestStatus.APPROVED,
                expected_version=req.version,
                expires_at=new_expiry,
            )
            if not ok:
                await self._lost_race(org_id, request_id, "extend", RequestStatus.APPROVED)
            await self.grants.extend_for_scopes(
                org_id, request_id, req.patient_id, req.doctor_id,
                req.granted_scopes or req.requested_scopes, new_expiry,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        req = await self._load(org_id, request_id)
        log.info("Consent extended id=%s by %sd expires_at=%s", req.id, days, req.expires_at)
        await self._notify(org_id, [{
            "user_id": req.doctor_id,
            "kind": "consent_extended",
            "subject_id": req.id,
            "variables": {"scopes": scope_label(req.granted_scopes or req.requested_scopes), "expires_at": new_expiry.isoformat()},
        }])
        return req

    async def expire(self, org_id: uuid.UUID, request_id: uuid.UUID, now: datetime | None = None) -> int | None:
        """Sweeper transition: approved -> expired plus the linked grant cascade.

        Returns the number of grants expired with it, or None when the row no longer
        qualifies (already swept, revoked or extended meanwhile).
        """
        now = now or utcnow()
        try:
            ok = await self.requests.transition(
                org_id, request_id, RequestStatus.APPROVED,
                extra=(ConsentRequest.expires_at <= now,),
                status=RequestStatus.EXPIRED.value,
            )
            if not ok:
                await self.session.rollback()
                return None
            expired = await self.grants.expire_for_request(org_id, request_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        log.info("Consent expired id=%s grants_expired=%s", request_id, expired)
        return expired

    # ---- Grants ----
    async def grants_for_request(self, org_id: uuid.UUID, request_id: uuid.UUID) -> Sequence[AccessGrant]:
        await self._load(org_id, request_id)
        return await self.grants.list_for_request(org_id, request_id)

    async def list_active_grants(self, org_id: uuid.UUID, *, patient_id: uuid.UUID | None = None, doctor_id: uuid.UUID | None = None,
                                 at: datetime | None = None) -> Sequence[AccessGrant]:
        if patient_id is None and doctor_id is None:
            raise ValidationError("patient_id or doctor_id is required")
        return await self.grants.list_live(org_id, at=at or utcnow(), patient_id=patient_id, doctor_id=doctor_id)

    async def revoke_grant(self, org_id: uuid.UUID, grant_id: uuid.UUID, patient_id: uuid.UUID) -> AccessGrant:
        try:
            grant = await self.grants.get(org_id, grant_id)
            if not grant:
                raise NotFoundError("access_grant", grant_id)
            if grant.patient_id != patient_id:
                raise UnauthorizedError(actor_id=patient_id)
            if grant.status != GrantStatus.ACTIVE.value:
                raise InvalidTransitionError("revoke grant", grant.status, GrantStatus.ACTIVE.value)
            ok = await self.grants.transition(
                org_id, grant_id, GrantStatus.ACTIVE,
                status=GrantStatus.REVOKED.value,
                revoked_at=utcnow(),
            )
            if not ok:
                current = await self.grants.get(org_id, grant_id)
                raise InvalidTransitionError("revoke grant", current.status if current else None, GrantStatus.ACTIVE.value)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        grant = await self.grants.get(org_id, grant_id)
        log.info("Access grant revoked id=%s scope=%s doctor=%s", grant.id, grant.scope, grant.doctor_id)
        await self._notify(org_id, [{
            "user_id": grant.doctor_id,
            "kind": "record_access_revoked",
            "subject_id": grant.id,
            "subject_type": "access_grant",
            "variables": {"scopes": scope_label([grant.scope]), "patient_id": grant.patient_id},
        }])
        return grant

    # ---- Access checks ----
    async def has_access(self, org_id: uuid.UUID, doctor_id: uuid.UUID, patient_id: uuid.UUID, scope: str | RecordType, at: datetime | None = None) -> bool:
        # pure read; expiry transitions belong to the sweeper
        return await self.grants.has_access(org_id, doctor_id, patient_id, _enum_value(scope), at=at or utcnow())

    async def has_access_type(self, org_id: uuid.UUID, doctor_id: uuid.UUID, patient_id: uuid.UUID, access_type: str | AccessType, at: datetime | None = None) -> bool:
        return await self.grants.has_access_type(org_id, doctor_id, patient_id, _enum_value(access_type), at=at or utcnow())
