import uuid
from typing import Sequence, Iterable
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_
from app.core.base import as_utc
from app.modules.consent.models import ConsentRequest, AccessGrant, RequestStatus, GrantStatus
from app.modules.consent.scopes import AccessType

class ConsentRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> ConsentRequest:
        obj = ConsentRequest(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, request_id: uuid.UUID) -> ConsentRequest | None:
        q = select(ConsentRequest).where(
            ConsentRequest.id == request_id,
            ConsentRequest.org_id == org_id,
            ConsentRequest.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def _list(self, org_id: uuid.UUID, *conditions, status: str | None, limit: int, offset: int) -> Sequence[ConsentRequest]:
        conds = [ConsentRequest.org_id == org_id, ConsentRequest.deleted_at.is_(None), *conditions]
        if status: conds.append(ConsentRequest.status == status)
        q = (
            select(ConsentRequest)
            .where(and_(*conds))
            .order_by(ConsentRequest.requested_at.desc(), ConsentRequest.created_at.desc())
            .limit(limit).offset(offset)
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_for_patient(self, org_id: uuid.UUID, patient_id: uuid.UUID, *, status: str | None = None, limit: int = 100, offset: int = 0) -> Sequence[ConsentRequest]:
        return await self._list(org_id, ConsentRequest.patient_id == patient_id, status=status, limit=limit, offset=offset)

    async def list_for_doctor(self, org_id: uuid.UUID, doctor_id: uuid.UUID, *, status: str | None = None, limit: int = 100, offset: int = 0) -> Sequence[ConsentRequest]:
        return await self._list(org_id, ConsentRequest.doctor_id == doctor_id, status=status, limit=limit, offset=offset)

    async def transition(self, org_id: uuid.UUID, request_id: uuid.UUID, expected: RequestStatus, *,
                         expected_version: int | None = None, extra: Iterable = (), **values) -> bool:
        # Compare-and-set on status: the precondition is re-checked by the UPDATE itself,
        # so of two racing writers only one can match the row.
        conds = [
            ConsentRequest.id == request_id,
            ConsentRequest.org_id == org_id,
            ConsentRequest.status == expected.value,
            ConsentRequest.deleted_at.is_(None),
            *extra,
        ]
        if expected_version is not None:
            conds.append(ConsentRequest.version == expected_version)
        q = (
            update(ConsentRequest)
            .where(and_(*conds))
            .values(version=ConsentRequest.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

    async def due_for_expiry(self, now: datetime, limit: int = 200) -> list[tuple[uuid.UUID, uuid.UUID]]:
        # spans tenants: the sweeper is a background process, not a caller
        q = (
            select(ConsentRequest.org_id, ConsentRequest.id)
            .where(
                ConsentRequest.status == RequestStatus.APPROVED.value,
                ConsentRequest.expires_at <= now,
                ConsentRequest.deleted_at.is_(None),
            )
            .order_by(ConsentRequest.expires_at.asc())
            .limit(limit)
        )
        res = await self.session.execute(q)
        return [(row.org_id, row.id) for row in res.all()]

class AccessGrantRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> AccessGrant:
        obj = AccessGrant(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, grant_id: uuid.UUID) -> AccessGrant | None:
        q = select(AccessGrant).where(
            AccessGrant.id == grant_id,
            AccessGrant.org_id == org_id,
            AccessGrant.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_active(self, org_id: uuid.UUID, patient_id: uuid.UUID, doctor_id: uuid.UUID, scope: str) -> AccessGrant | None:
        q = (
            select(AccessGrant)
            .where(
                AccessGrant.org_id == org_id,
                AccessGrant.patient_id == patient_id,
                AccessGrant.doctor_id == doctor_id,
                AccessGrant.scope == scope,
                AccessGrant.status == GrantStatus.ACTIVE.value,
                AccessGrant.deleted_at.is_(None),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def upsert_active(self, org_id: uuid.UUID, *, patient_id: uuid.UUID, doctor_id: uuid.UUID, scope: str,
                            access_type: str, request_id: uuid.UUID, granted_at: datetime, expires_at: datetime) -> tuple[AccessGrant, bool]:
        """Create the live grant for the key, or lengthen the existing one.

        An existing grant only moves to the new request when that outlives its current
        expiry; otherwise it stays on the longer-lived request untouched.
        Returns ``(grant, created)``.
        """
        existing = await self.get_active(org_id, patient_id, doctor_id, scope)
        if existing:
            if as_utc(existing.expires_at) >= as_utc(expires_at):
                return existing, False
            existing.expires_at = expires_at
            existing.request_id = request_id
            existing.access_type = access_type
            existing.version = (existing.version or 1) + 1
            await self.session.flush()
            return existing, False
        obj = await self.create(
            org_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            scope=scope,
            access_type=access_type,
            status=GrantStatus.ACTIVE.value,
            request_id=request_id,
            granted_at=granted_at,
            expires_at=expires_at,
        )
        return obj, True

    async def list_for_request(self, org_id: uuid.UUID, request_id: uuid.UUID) -> Sequence[AccessGrant]:
        q = select(AccessGrant).where(
            AccessGrant.org_id == org_id,
            AccessGrant.request_id == request_id,
            AccessGrant.deleted_at.is_(None),
        ).order_by(AccessGrant.scope.asc()).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_live(self, org_id: uuid.UUID, *, at: datetime, patient_id: uuid.UUID | None = None, doctor_id: uuid.UUID | None = None) -> Sequence[AccessGrant]:
        conds = [
            AccessGrant.org_id == org_id,
            AccessGrant.status == GrantStatus.ACTIVE.value,
            AccessGrant.expires_at > at,
            AccessGrant.deleted_at.is_(None),
        ]
        if patient_id: conds.append(AccessGrant.patient_id == patient_id)
        if doctor_id:  conds.append(AccessGrant.doctor_id == doctor_id)
        q = select(AccessGrant).where(and_(*conds)).order_by(AccessGrant.granted_at.desc()).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def _bulk(self, conditions: list, **values) -> int:
        q = (
            update(AccessGrant)
            .where(and_(AccessGrant.status == GrantStatus.ACTIVE.value, AccessGrant.deleted_at.is_(None), *conditions))
            .values(version=AccessGrant.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount or 0

    async def revoke_for_scopes(self, org_id: uuid.UUID, patient_id: uuid.UUID, doctor_id: uuid.UUID, scopes: Iterable[str], when: datetime) -> int:
        return await self._bulk(
            [
                AccessGrant.org_id == org_id,
                AccessGrant.patient_id == patient_id,
                AccessGrant.doctor_id == doctor_id,
                AccessGrant.scope.in_(list(scopes)),
            ],
            status=GrantStatus.REVOKED.value,
            revoked_at=when,
        )

    async def expire_for_request(self, org_id: uuid.UUID, request_id: uuid.UUID) -> int:
        return await self._bulk(
            [AccessGrant.org_id == org_id, AccessGrant.request_id == request_id],
            status=GrantStatus.EXPIRED.value,
        )

    async def extend_for_scopes(self, org_id: uuid.UUID, request_id: uuid.UUID, patient_id: uuid.UUID, doctor_id: uuid.UUID,
                                scopes: Iterable[str], expires_at: datetime) -> int:
        # grants on this request, plus shorter-lived ones for the same key that now follow it
        return await self._bulk(
            [
                AccessGrant.org_id == org_id,
                AccessGrant.patient_id == patient_id,
                AccessGrant.doctor_id == doctor_id,
                AccessGrant.scope.in_(list(scopes)),
                or_(AccessGrant.request_id == request_id, AccessGrant.expires_at < expires_at),
            ],
            expires_at=expires_at,
            request_id=request_id,
        )

    async def expire_overdue(self, now: datetime, *, exclude_request_ids: Iterable[uuid.UUID] = ()) -> int:
        # grants of a request that is itself due are left to that request's cascade
        parent_due = (
            select(ConsentRequest.id)
            .where(
                ConsentRequest.id == AccessGrant.request_id,
                ConsentRequest.status == RequestStatus.APPROVED.value,
                ConsentRequest.expires_at <= now,
            )
            .exists()
        )
        conds = [AccessGrant.expires_at <= now, ~parent_due]
        excluded = list(exclude_request_ids)
        if excluded:
            conds.append(AccessGrant.request_id.not_in(excluded))
        return await self._bulk(conds, status=GrantStatus.EXPIRED.value)

    async def transition(self, org_id: uuid.UUID, grant_id: uuid.UUID, expected: GrantStatus, **values) -> bool:
        q = (
            update(AccessGrant)
            .where(
                AccessGrant.id == grant_id,
                AccessGrant.org_id == org_id,
                AccessGrant.status == expected.value,
                AccessGrant.deleted_at.is_(None),
            )
            .values(version=AccessGrant.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

    async def has_access(self, org_id: uuid.UUID, doctor_id: uuid.UUID, patient_id: uuid.UUID, scope: str, at: datetime) -> bool:
        # expires_at is compared directly so a grant the sweeper has not reached yet is already dead here
        q = select(AccessGrant.id).where(
            AccessGrant.org_id == org_id,
            AccessGrant.doctor_id == doctor_id,
            AccessGrant.patient_id == patient_id,
            AccessGrant.scope == scope,
            AccessGrant.status == GrantStatus.ACTIVE.value,
            AccessGrant.expires_at > at,
            AccessGrant.deleted_at.is_(None),
        ).limit(1)
        res = await self.session.execute(q)
        return res.scalar_one_or_none() is not None

    async def has_access_type(self, org_id: uuid.UUID, doctor_id: uuid.UUID, patient_id: uuid.UUID, access_type: str, at: datetime) -> bool:
        q = select(AccessGrant.id).where(
            AccessGrant.org_id == org_id,
            AccessGrant.doctor_id == doctor_id,
            AccessGrant.patient_id == patient_id,
            or_(AccessGrant.access_type == access_type, AccessGrant.access_type == AccessType.ALL.value),
            AccessGrant.status == GrantStatus.ACTIVE.value,
            AccessGrant.expires_at > at,
            AccessGrant.deleted_at.is_(None),
        ).limit(1)
        res = await self.session.execute(q)
        return res.scalars().first() is not None
