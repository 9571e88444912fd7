import asyncio
import logging
from sqlalchemy.ext.asyncio import async_sessionmaker
from app.core.db import SessionLocal
from app.platform.ports.event_bus import EventBusPort
from app.platform.provider_registry import registry
from app.modules.notifications.repository import NotificationRepository

log = logging.getLogger("notifications.relay")

TOPIC = "consent.notifications"

def _envelope(n) -> dict:
    return {
        "org_id": str(n.org_id),
        "user_id": str(n.user_id),
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "action_url": n.action_url,
        "metadata": n.meta or {},
        "subject": {"type": n.subject_type, "id": n.subject_id},
        "occurred_at": n.occurred_at.isoformat() if n.occurred_at else None,
        "notification_id": str(n.id),
    }

async def relay_once(session_factory: async_sessionmaker = SessionLocal, bus: EventBusPort | None = None, limit: int = 50) -> int:
    """Claim one batch of pending notifications and hand them to the bus.

    Returns the number published successfully.
    """
    bus = bus or registry.event_bus()
    sent = 0
    async with session_factory() as session:
        repo = NotificationRepository(session)
        batch = await repo.claim_batch(limit=limit)
        for n in batch:
            try:
                await bus.publish(topic=TOPIC, key=str(n.user_id), value=_envelope(n))
                await repo.mark_sent(n)
                sent += 1
            except Exception as ex:  # noqa
                log.exception("Publish failed")
                await repo.mark_failed(n, error=str(ex))
        await session.commit()
    return sent

# ---- Background relay ----

async def run_notification_relay(poll_interval_seconds: float = 1.0, session_factory: async_sessionmaker = SessionLocal):
    bus = registry.event_bus()
    log.info("Notification relay started with bus=%s", bus.__class__.__name__)
    try:
        while True:
            try:
                sent = await relay_once(session_factory, bus)
            except Exception:
                log.exception("Notification relay iteration failed")
                sent = 0
            if not sent:
                await asyncio.sleep(poll_interval_seconds)
            await asyncio.sleep(0)  # yield
    except asyncio.CancelledError:
        log.info("Notification relay cancelled; shutting down")
        raise
