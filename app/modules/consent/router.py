import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.db import get_session
from app.core.errors import UnauthorizedError, ValidationError
from app.core.security import get_principal, Principal, require_scopes
from app.modules.consent.schemas import (
    ConsentRequestCreate, ConsentRequestOut, ConsentApprove, ConsentDeny, ConsentExtend,
    AccessGrantOut, AccessCheckOut,
)
from app.modules.consent.service import ConsentService

router = APIRouter()

STATUS_PATTERN = "^(pending|approved|denied|revoked|expired)$"

def svc(session: AsyncSession = Depends(get_session)) -> ConsentService:
    return ConsentService(session)

def _self_only(principal: Principal, user_id: uuid.UUID):
    if principal.user_id != user_id and "admin" not in principal.roles:
        raise UnauthorizedError("Listing is limited to the caller's own records", actor_id=principal.user_id)

# ---- Requests ----

@router.post("/consents/requests", response_model=ConsentRequestOut, status_code=201, dependencies=[Depends(require_scopes("consent:write"))])
async def create_request(
    payload: ConsentRequestCreate,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.create_request(principal.org_id, principal.user_id, payload)

@router.get("/consents/requests/{request_id}", response_model=ConsentRequestOut, dependencies=[Depends(require_scopes("consent:read"))])
async def get_request(
    request_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    obj = await service.get_request(principal.org_id, request_id)
    if principal.user_id not in (obj.patient_id, obj.doctor_id):
        _self_only(principal, obj.patient_id)
    return obj

@router.get("/patients/{patient_id}/consent-requests", response_model=list[ConsentRequestOut], dependencies=[Depends(require_scopes("consent:read"))])
async def list_patient_requests(
    patient_id: uuid.UUID,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    _self_only(principal, patient_id)
    return await service.list_for_patient(principal.org_id, patient_id, status=status, limit=limit, offset=offset)

@router.get("/doctors/{doctor_id}/consent-requests", response_model=list[ConsentRequestOut], dependencies=[Depends(require_scopes("consent:read"))])
async def list_doctor_requests(
    doctor_id: uuid.UUID,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    _self_only(principal, doctor_id)
    return await service.list_for_doctor(principal.org_id, doctor_id, status=status, limit=limit, offset=offset)

@router.post("/consents/requests/{request_id}/approve", response_model=ConsentRequestOut, dependencies=[Depends(require_scopes("consent:write"))])
async def approve_request(
    request_id: uuid.UUID,
    payload: ConsentApprove | None = None,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    payload = payload or ConsentApprove()
    return await service.approve(
        principal.org_id, request_id, principal.user_id,
        granted_scopes=payload.granted_scopes, message=payload.message,
    )

@router.post("/consents/requests/{request_id}/deny", response_model=ConsentRequestOut, dependencies=[Depends(require_scopes("consent:write"))])
async def deny_request(
    request_id: uuid.UUID,
    payload: ConsentDeny | None = None,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.deny(principal.org_id, request_id, principal.user_id, reason=(payload.reason if payload else None))

@router.post("/consents/requests/{request_id}/revoke", response_model=ConsentRequestOut, dependencies=[Depends(require_scopes("consent:write"))])
async def revoke_request(
    request_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.revoke(principal.org_id, request_id, principal.user_id)

@router.post("/consents/requests/{request_id}/extend", response_model=ConsentRequestOut, dependencies=[Depends(require_scopes("consent:write"))])
async def extend_request(
    request_id: uuid.UUID,
    payload: ConsentExtend | None = None,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    days = payload.additional_days if payload else None
    return await service.extend(principal.org_id, request_id, days, acting_id=principal.user_id)

@router.get("/consents/requests/{request_id}/grants", response_model=list[AccessGrantOut], dependencies=[Depends(require_scopes("consent:read"))])
async def list_request_grants(
    request_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    obj = await service.get_request(principal.org_id, request_id)
    if principal.user_id not in (obj.patient_id, obj.doctor_id):
        _self_only(principal, obj.patient_id)
    return await service.grants_for_request(principal.org_id, request_id)

# ---- Grants ----

@router.get("/patients/{patient_id}/access-grants", response_model=list[AccessGrantOut], dependencies=[Depends(require_scopes("consent:read"))])
async def list_patient_grants(
    patient_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    _self_only(principal, patient_id)
    return await service.list_active_grants(principal.org_id, patient_id=patient_id)

@router.get("/doctors/{doctor_id}/access-grants", response_model=list[AccessGrantOut], dependencies=[Depends(require_scopes("consent:read"))])
async def list_doctor_grants(
    doctor_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    _self_only(principal, doctor_id)
    return await service.list_active_grants(principal.org_id, doctor_id=doctor_id)

@router.post("/access-grants/{grant_id}/revoke", response_model=AccessGrantOut, dependencies=[Depends(require_scopes("consent:write"))])
async def revoke_grant(
    grant_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.revoke_grant(principal.org_id, grant_id, principal.user_id)

@router.get("/access/check", response_model=AccessCheckOut, dependencies=[Depends(require_scopes("consent:read"))])
async def check_access(
    doctor_id: uuid.UUID,
    patient_id: uuid.UUID,
    scope: str | None = Query(default=None, pattern="^[a-z_]{1,32}$"),
    access_type: str | None = Query(default=None, pattern="^(view_records|view_prescriptions|view_consultation_notes|all)$"),
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    if scope is None and access_type is None:
        raise ValidationError("scope or access_type is required", field="scope")
    if principal.user_id not in (doctor_id, patient_id):
        _self_only(principal, patient_id)
    if scope is not None:
        allowed = await service.has_access(principal.org_id, doctor_id, patient_id, scope)
    else:
        allowed = await service.has_access_type(principal.org_id, doctor_id, patient_id, access_type)
    return AccessCheckOut(doctor_id=doctor_id, patient_id=patient_id, scope=scope, access_type=access_type, allowed=allowed)
