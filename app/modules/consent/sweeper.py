import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy.ext.asyncio import async_sessionmaker
from app.core.base import utcnow
from app.core.config import settings
from app.core.db import SessionLocal
from app.modules.consent.repository import ConsentRequestRepository, AccessGrantRepository
from app.modules.consent.service import ConsentService, scope_label

log = logging.getLogger("consent.sweeper")

@dataclass
class SweepResult:
    requests_expired: int = 0
    grants_expired: int = 0
    skipped: int = 0
    failed: int = 0
    expired_request_ids: list = field(default_factory=list)

    @property
    def writes(self) -> int:
        return self.requests_expired + self.grants_expired

async def sweep_expired(session_factory: async_sessionmaker = SessionLocal, now: datetime | None = None,
                        batch_size: int | None = None) -> SweepResult:
    """One pass over everything whose expiry has passed.

    Requests go approved -> expired together with their linked grants, one transaction
    per request. Grants left active past their own expiry are then expired directly.
    Safe to run from several replicas at once: a row another pass already moved no
    longer matches the status precondition and is skipped.
    """
    now = now or utcnow()
    limit = batch_size or settings.SWEEPER_BATCH_SIZE
    result = SweepResult()

    async with session_factory() as session:
        due = await ConsentRequestRepository(session).due_for_expiry(now, limit=limit)
        await session.rollback()

    for org_id, request_id in due:
        async with session_factory() as session:
            svc = ConsentService(session)
            try:
                cascaded = await svc.expire(org_id, request_id, now=now)
            except Exception:
                # left approved; its grants stay with it and the next pass retries
                log.exception("Expiring request=%s failed", request_id)
                result.failed += 1
                continue
            if cascaded is None:
                result.skipped += 1
                continue
            result.requests_expired += 1
            result.grants_expired += cascaded
            result.expired_request_ids.append(request_id)
            req = await svc.requests.get(org_id, request_id)
            scopes = scope_label(req.granted_scopes or req.requested_scopes)
            variables = {"scopes": scopes, "expires_at": req.expires_at.isoformat() if req.expires_at else ""}
            await svc.notifications.emit_after_commit(org_id, [
                {"user_id": req.doctor_id, "kind": "consent_expired", "subject_id": req.id, "variables": variables},
                {"user_id": req.patient_id, "kind": "consent_expired", "subject_id": req.id, "variables": variables},
            ])

    # stragglers: active grants past expiry whose request is not itself due
    async with session_factory() as session:
        try:
            stray = await AccessGrantRepository(session).expire_overdue(now, exclude_request_ids=result.expired_request_ids)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    result.grants_expired += stray

    if result.writes or result.skipped or result.failed:
        log.info(
            "Sweep done: requests_expired=%s grants_expired=%s skipped=%s failed=%s",
            result.requests_expired, result.grants_expired, result.skipped, result.failed,
        )
    return result

# ---- Background loop ----

async def run_consent_sweeper(interval_seconds: float | None = None, session_factory: async_sessionmaker = SessionLocal):
    interval = interval_seconds or settings.SWEEPER_INTERVAL_SECONDS
    log.info("Consent sweeper started interval=%ss", interval)
    try:
        while True:
            try:
                await sweep_expired(session_factory)
            except Exception:
                log.exception("Consent sweeper iteration failed")
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        log.info("Consent sweeper cancelled; shutting down")
        raise
