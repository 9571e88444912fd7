"""Lifecycle tests for ConsentService: create, approve, deny, revoke, extend."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.base import utcnow, as_utc
from app.core.errors import InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError
from app.modules.consent.models import ConsentRequest, GrantStatus, RequestStatus
from app.modules.consent.repository import AccessGrantRepository
from app.modules.consent.schemas import ConsentRequestCreate
from app.modules.consent.scopes import AccessType, RecordType
from app.modules.consent.service import ConsentService

from .conftest import ORG_ID


class TestCreateRequest:
    """Validation and initial state of a new request."""

    @pytest.mark.asyncio
    async def test_create_is_pending_with_deduplicated_scopes(self, make_request, patient_id, doctor_id):
        req = await make_request(scopes=["prescription", "lab_test", "lab_test"])

        assert req.status == RequestStatus.PENDING.value
        assert req.requested_scopes == ["lab_test", "prescription"]
        assert req.patient_id == patient_id
        assert req.doctor_id == doctor_id
        assert req.responded_at is None
        assert req.expires_at is None

    @pytest.mark.asyncio
    async def test_empty_scopes_rejected(self, make_request):
        with pytest.raises(ValidationError) as exc:
            await make_request(scopes=[])
        assert exc.value.details["field"] == "requested_scopes"

    @pytest.mark.asyncio
    async def test_unknown_scope_rejected(self, make_request):
        with pytest.raises(ValidationError):
            await make_request(scopes=["lab_test", "dna_sequence"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, -5])
    async def test_non_positive_duration_rejected(self, make_request, days):
        with pytest.raises(ValidationError):
            await make_request(duration_days=days)

    @pytest.mark.asyncio
    async def test_duration_defaults_when_omitted(self, service, patient_id, doctor_id):
        payload = ConsentRequestCreate(patient_id=patient_id, purpose="Annual review", requested_scopes=["imaging"])
        req = await service.create_request(ORG_ID, doctor_id, payload)
        assert req.duration_days == 30

    @pytest.mark.asyncio
    async def test_self_request_rejected(self, make_request, doctor_id):
        with pytest.raises(ValidationError):
            await make_request(patient=doctor_id, doctor=doctor_id)


class TestApprove:
    """Approval fans a request out into one grant per scope."""

    @pytest.mark.asyncio
    async def test_approve_creates_one_grant_per_scope(self, service, make_request, patient_id):
        req = await make_request(scopes=["lab_test", "prescription"], duration_days=30)
        before = utcnow()

        approved = await service.approve(ORG_ID, req.id, patient_id)

        assert approved.status == RequestStatus.APPROVED.value
        assert approved.responded_at is not None
        expires_at = as_utc(approved.expires_at)
        assert before + timedelta(days=30) <= expires_at <= utcnow() + timedelta(days=30)

        grants = await service.grants_for_request(ORG_ID, req.id)
        assert sorted(g.scope for g in grants) == ["lab_test", "prescription"]
        assert all(g.status == GrantStatus.ACTIVE.value for g in grants)
        assert all(as_utc(g.expires_at) == expires_at for g in grants)
        assert {g.scope: g.access_type for g in grants} == {
            "lab_test": "view_records",
            "prescription": "view_prescriptions",
        }

    @pytest.mark.asyncio
    async def test_approve_subset_of_scopes(self, service, make_request, patient_id):
        req = await make_request(scopes=["lab_test", "imaging", "prescription"])

        approved = await service.approve(ORG_ID, req.id, patient_id, granted_scopes=["imaging"])

        assert approved.granted_scopes == ["imaging"]
        grants = await service.grants_for_request(ORG_ID, req.id)
        assert [g.scope for g in grants] == ["imaging"]

    @pytest.mark.asyncio
    async def test_approve_with_unrequested_scope_rejected(self, service, make_request, patient_id):
        req = await make_request(scopes=["lab_test"])
        with pytest.raises(ValidationError):
            await service.approve(ORG_ID, req.id, patient_id, granted_scopes=["vaccination"])
        assert (await service.get_request(ORG_ID, req.id)).status == RequestStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_only_subject_patient_may_approve(self, service, make_request, doctor_id):
        req = await make_request()
        with pytest.raises(UnauthorizedError):
            await service.approve(ORG_ID, req.id, doctor_id)
        with pytest.raises(UnauthorizedError):
            await service.approve(ORG_ID, req.id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_double_approve_is_invalid_transition(self, service, make_request, patient_id):
        req = await make_request()
        await service.approve(ORG_ID, req.id, patient_id)
        with pytest.raises(InvalidTransitionError):
            await service.approve(ORG_ID, req.id, patient_id)
        grants = await service.grants_for_request(ORG_ID, req.id)
        assert len(grants) == 2

    @pytest.mark.asyncio
    async def test_unknown_request_is_not_found(self, service, patient_id):
        with pytest.raises(NotFoundError):
            await service.approve(ORG_ID, uuid.uuid4(), patient_id)

    @pytest.mark.asyncio
    async def test_reapproval_upserts_instead_of_duplicating(self, service, make_request, patient_id, doctor_id, session):
        first = await make_request(scopes=["lab_test", "prescription"], duration_days=10)
        await service.approve(ORG_ID, first.id, patient_id)
        second = await make_request(scopes=["lab_test", "imaging"], duration_days=60)
        approved = await service.approve(ORG_ID, second.id, patient_id)

        live = await service.list_active_grants(ORG_ID, patient_id=patient_id)
        assert sorted(g.scope for g in live) == ["imaging", "lab_test", "prescription"]
        lab = [g for g in live if g.scope == "lab_test"]
        assert len(lab) == 1
        assert lab[0].request_id == second.id
        assert as_utc(lab[0].expires_at) == as_utc(approved.expires_at)

    @pytest.mark.asyncio
    async def test_shorter_reapproval_leaves_grant_on_longer_request(self, service, make_request, patient_id, doctor_id):
        long = await make_request(scopes=["lab_test"], duration_days=90)
        first = await service.approve(ORG_ID, long.id, patient_id)
        long_expiry = as_utc(first.expires_at)
        short = await make_request(scopes=["lab_test", "imaging"], duration_days=10)
        await service.approve(ORG_ID, short.id, patient_id)

        lab = (await service.grants_for_request(ORG_ID, long.id))[0]
        assert lab.scope == "lab_test"
        assert as_utc(lab.expires_at) == long_expiry
        assert [g.scope for g in await service.grants_for_request(ORG_ID, short.id)] == ["imaging"]
        assert await service.has_access(ORG_ID, doctor_id, patient_id, "lab_test", at=utcnow() + timedelta(days=20))

    @pytest.mark.asyncio
    async def test_failed_fan_out_rolls_back_approval(self, service, make_request, patient_id, monkeypatch):
        req = await make_request(scopes=["lab_test", "prescription"])
        calls = {"n": 0}
        original = AccessGrantRepository.upsert_active

        async def flaky(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("grant store unavailable")
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(AccessGrantRepository, "upsert_active", flaky)
        with pytest.raises(RuntimeError):
            await service.approve(ORG_ID, req.id, patient_id)

        reloaded = await service.get_request(ORG_ID, req.id)
        assert reloaded.status == RequestStatus.PENDING.value
        assert reloaded.responded_at is None
        assert await service.grants_for_request(ORG_ID, req.id) == []


class TestDeny:
    @pytest.mark.asyncio
    async def test_deny_is_terminal_and_creates_no_grants(self, service, make_request, patient_id):
        req = await make_request()

        denied = await service.deny(ORG_ID, req.id, patient_id, reason="Not comfortable sharing yet")

        assert denied.status == RequestStatus.DENIED.value
        assert denied.response_message == "Not comfortable sharing yet"
        assert denied.responded_at is not None
        assert denied.expires_at is None
        assert await service.grants_for_request(ORG_ID, req.id) == []
        with pytest.raises(InvalidTransitionError):
            await service.approve(ORG_ID, req.id, patient_id)

    @pytest.mark.asyncio
    async def test_doctor_cannot_deny(self, service, make_request, doctor_id):
        req = await make_request()
        with pytest.raises(UnauthorizedError):
            await service.deny(ORG_ID, req.id, doctor_id)


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_cascades_to_every_grant(self, service, make_request, patient_id, doctor_id):
        req = await make_request(scopes=["lab_test", "prescription"])
        await service.approve(ORG_ID, req.id, patient_id)

        revoked = await service.revoke(ORG_ID, req.id, patient_id)

        assert revoked.status == RequestStatus.REVOKED.value
        assert revoked.expires_at is not None
        grants = await service.grants_for_request(ORG_ID, req.id)
        assert [g.status for g in grants] == [GrantStatus.REVOKED.value] * 2
        assert not await service.has_access(ORG_ID, doctor_id, patient_id, "lab_test")
        assert not await service.has_access(ORG_ID, doctor_id, patient_id, "prescription")

    @pytest.mark.asyncio
    async def test_revoke_covers_grants_repointed_to_newer_request(self, service, make_request, patient_id, doctor_id):
        old = await make_request(scopes=["lab_test"])
        await service.approve(ORG_ID, old.id, patient_id)
        new = await make_request(scopes=["lab_test", "imaging"])
        await service.approve(ORG_ID, new.id, patient_id)

        await service.revoke(ORG_ID, old.id, patient_id)

        assert not await service.has_access(ORG_ID, doctor_id, patient_id, "lab_test")
        assert await service.has_access(ORG_ID, doctor_id, patient_id, "imaging")

    @pytest.mark.asyncio
    async def test_revoking_pending_request_is_invalid(self, service, make_request, patient_id):
        req = await make_request()
        with pytest.raises(InvalidTransitionError):
            await service.revoke(ORG_ID, req.id, patient_id)

    @pytest.mark.asyncio
    async def test_doctor_cannot_revoke(self, service, make_request, patient_id, doctor_id):
        req = await make_request()
        await service.approve(ORG_ID, req.id, patient_id)
        with pytest.raises(UnauthorizedError):
            await service.revoke(ORG_ID, req.id, doctor_id)
        assert await service.has_access(ORG_ID, doctor_id, patient_id, "lab_test")


class TestExtend:
    @pytest.mark.asyncio
    async def test_extend_moves_request_and_grants(self, service, make_request, patient_id):
        req = await make_request(duration_days=30)
        approved = await service.approve(ORG_ID, req.id, patient_id)
        old_expiry = as_utc(approved.expires_at)

        extended = await service.extend(ORG_ID, req.id, 15)

        new_expiry = as_utc(extended.expires_at)
        assert new_expiry == old_expiry + timedelta(days=15)
        grants = await service.grants_for_request(ORG_ID, req.id)
        assert all(as_utc(g.expires_at) == new_expiry for g in grants)
        assert extended.status == RequestStatus.APPROVED.value

    @pytest.mark.asyncio
    async def test_extend_after_lapse_measures_from_now(self, service, make_request, patient_id, session):
        req = await make_request(duration_days=30)
        await service.approve(ORG_ID, req.id, patient_id)
        lapsed = utcnow() - timedelta(days=3)
        await session.execute(update(ConsentRequest).where(ConsentRequest.id == req.id).values(expires_at=lapsed))
        await session.commit()

        before = utcnow()
        extended = await service.extend(ORG_ID, req.id, 10)

        new_expiry = as_utc(extended.expires_at)
        assert new_expiry > lapsed
        assert new_expiry >= before + timedelta(days=10)

    @pytest.mark.asyncio
    async def test_extend_carries_shorter_grants_for_same_scope(self, service, make_request, patient_id):
        older = await make_request(scopes=["lab_test"], duration_days=30)
        await service.approve(ORG_ID, older.id, patient_id)
        newer = await make_request(scopes=["lab_test", "imaging"], duration_days=10)
        await service.approve(ORG_ID, newer.id, patient_id)

        extended = await service.extend(ORG_ID, newer.id, 60)

        new_expiry = as_utc(extended.expires_at)
        grants = await service.grants_for_request(ORG_ID, newer.id)
        assert [g.scope for g in grants] == ["imaging", "lab_test"]
        assert all(as_utc(g.expires_at) == new_expiry for g in grants)
        assert await service.grants_for_request(ORG_ID, older.id) == []

    @pytest.mark.asyncio
    async def test_extend_requires_approved(self, service, make_request):
        req = await make_request()
        with pytest.raises(InvalidTransitionError):
            await service.extend(ORG_ID, req.id, 10)

    @pytest.mark.asyncio
    async def test_extend_by_non_patient_rejected(self, service, make_request, patient_id, doctor_id):
        req = await make_request()
        await service.approve(ORG_ID, req.id, patient_id)
        with pytest.raises(UnauthorizedError):
            await service.extend(ORG_ID, req.id, 10, acting_id=doctor_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, -1, 10_000])
    async def test_extend_days_validated(self, service, make_request, patient_id, days):
        req = await make_request()
        await service.approve(ORG_ID, req.id, patient_id)
        with pytest.raises(ValidationError):
            await service.extend(ORG_ID, req.id, days)


class TestRaces:
    """A stale writer must observe InvalidTransition instead of overwriting."""

    @pytest.mark.asyncio
    async def test_compare_and_set_lets_only_one_writer_through(self, session_factory, make_request):
        req = await make_request()
        async with session_factory() as s1, session_factory() as s2:
            first = await ConsentService(s1).requests.transition(
                ORG_ID, req.id, RequestStatus.PENDING, status=RequestStatus.APPROVED.value, responded_at=utcnow(),
            )
            await s1.commit()
            second = await ConsentService(s2).requests.transition(
                ORG_ID, req.id, RequestStatus.PENDING, status=RequestStatus.DENIED.value, responded_at=utcnow(),
            )
            await s2.commit()
        assert first is True
        assert second is False

    @pytest.mark.asyncio
    async def test_approve_then_deny_from_separate_sessions(self, session_factory, make_request, patient_id):
        req = await make_request()
        async with session_factory() as s1, session_factory() as s2:
            approver, denier = ConsentService(s1), ConsentService(s2)
            await denier.get_request(ORG_ID, req.id)  # denier saw it pending

            await approver.approve(ORG_ID, req.id, patient_id)
            with pytest.raises(InvalidTransitionError):
                await denier.deny(ORG_ID, req.id, patient_id)

            final = await denier.get_request(ORG_ID, req.id)
        assert final.status == RequestStatus.APPROVED.value


class TestAccessCheck:
    @pytest.mark.asyncio
    async def test_enum_and_string_arguments_agree(self, service, make_request, patient_id, doctor_id):
        req = await make_request(scopes=["lab_test"])
        await service.approve(ORG_ID, req.id, patient_id)

        assert await service.has_access(ORG_ID, doctor_id, patient_id, "lab_test")
        assert await service.has_access(ORG_ID, doctor_id, patient_id, RecordType.LAB_TEST)
        assert not await service.has_access(ORG_ID, doctor_id, patient_id, RecordType.IMAGING)
        assert await service.has_access_type(ORG_ID, doctor_id, patient_id, AccessType.VIEW_RECORDS)
        assert await service.has_access_type(ORG_ID, doctor_id, patient_id, "view_records")
        assert not await service.has_access_type(ORG_ID, doctor_id, patient_id, AccessType.VIEW_PRESCRIPTIONS)


class TestRevokeSingleGrant:
    @pytest.mark.asyncio
    async def test_patient_revokes_one_scope(self, service, make_request, patient_id, doctor_id):
        req = await make_request(scopes=["lab_test", "prescription"])
        await service.approve(ORG_ID, req.id, patient_id)
        lab = next(g for g in await service.grants_for_request(ORG_ID, req.id) if g.scope == "lab_test")

        revoked = await service.revoke_grant(ORG_ID, lab.id, patient_id)

        assert revoked.status == GrantStatus.REVOKED.value
        assert revoked.revoked_at is not None
        assert not await service.has_access(ORG_ID, doctor_id, patient_id, "lab_test")
        assert await service.has_access(ORG_ID, doctor_id, patient_id, "prescription")
        assert (await service.get_request(ORG_ID, req.id)).status == RequestStatus.APPROVED.value
        with pytest.raises(InvalidTransitionError):
            await service.revoke_grant(ORG_ID, lab.id, patient_id)

    @pytest.mark.asyncio
    async def test_other_user_cannot_revoke_grant(self, service, make_request, patient_id, doctor_id):
        req = await make_request()
        await service.approve(ORG_ID, req.id, patient_id)
        grant = (await service.grants_for_request(ORG_ID, req.id))[0]
        with pytest.raises(UnauthorizedError):
            await service.revoke_grant(ORG_ID, grant.id, doctor_id)
