import uuid
from typing import Sequence
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, func
from app.core.base import utcnow
from app.modules.notifications.models import Notification

class NotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> Notification:
        now = utcnow()
        obj = Notification(
            org_id=org_id,
            occurred_at=data.pop("occurred_at", None) or now,
            delivery_status="pending",
            attempts=0,
            next_attempt_at=now,
            **data,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, notification_id: uuid.UUID) -> Notification | None:
        q = select(Notification).where(
            Notification.id == notification_id,
            Notification.org_id == org_id,
            Notification.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list_for_user(self, org_id: uuid.UUID, user_id: uuid.UUID, *, unread_only: bool = False, limit: int = 50) -> Sequence[Notification]:
        conds = [Notification.org_id == org_id, Notification.user_id == user_id, Notification.deleted_at.is_(None)]
        if unread_only:
            conds.append(Notification.read.is_(False))
        q = (
            select(Notification)
            .where(and_(*conds))
            .order_by(Notification.occurred_at.desc(), Notification.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_for_subject(self, org_id: uuid.UUID, subject_id: str) -> Sequence[Notification]:
        q = select(Notification).where(
            Notification.org_id == org_id,
            Notification.subject_id == str(subject_id),
            Notification.deleted_at.is_(None),
        ).order_by(Notification.occurred_at.asc()).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def mark_all_read(self, org_id: uuid.UUID, user_id: uuid.UUID) -> int:
        q = (
            update(Notification)
            .where(
                Notification.org_id == org_id,
                Notification.user_id == user_id,
                Notification.read.is_(False),
                Notification.deleted_at.is_(None),
            )
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount or 0

    async def unread_count(self, org_id: uuid.UUID, user_id: uuid.UUID) -> int:
        q = select(func.count(Notification.id)).where(
            Notification.org_id == org_id,
            Notification.user_id == user_id,
            Notification.read.is_(False),
            Notification.deleted_at.is_(None),
        )
        res = await self.session.execute(q)
        return int(res.scalar_one())

    # ---- outbox side ----

    async def claim_batch(self, limit: int = 50) -> list[Notification]:
        # SELECT ... FOR UPDATE SKIP LOCKED
        q = (
            select(Notification)
            .where(
                and_(
                    Notification.deleted_at.is_(None),
                    Notification.delivery_status == "pending",
                    Notification.next_attempt_at <= utcnow(),
                )
            )
            .order_by(Notification.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        res = await self.session.execute(q)
        rows = list(res.scalars().all())
        # mark as processing
        for r in rows:
            r.delivery_status = "processing"
        await self.session.flush()
        return rows

    async def mark_sent(self, obj: Notification):
        obj.delivery_status = "sent"
        obj.last_error = None
        await self.session.flush()

    async def mark_failed(self, obj: Notification, error: str):
        obj.delivery_status = "pending"  # retry
        obj.attempts = (obj.attempts or 0) + 1
        backoff = min(60, 2 ** min(obj.attempts, 6))  # 2,4,8,16,32,60s
        obj.next_attempt_at = utcnow() + timedelta(seconds=backoff)
        obj.last_error = error[:2000]  # truncate
        await self.session.flush()
