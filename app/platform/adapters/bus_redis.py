import json
import logging
from redis.asyncio import Redis, from_url as redis_from_url
from app.platform.ports.event_bus import EventBusPort
from app.core.config import settings

log = logging.getLogger("bus.redis")

class RedisEventBus(EventBusPort):
    """Appends outbox messages to a capped Redis stream for the delivery workers."""

    def __init__(self, url: str | None = None, stream: str | None = None, maxlen: int | None = None, client: Redis | None = None):
        url = url or settings.REDIS_URL
        if client is None and not url:
            raise RuntimeError("REDIS_URL not configured")
        self.redis = client or redis_from_url(url, encoding="utf-8", decode_responses=True)
        self.stream = stream or settings.REDIS_STREAM or "consent.notifications"
        self.maxlen = maxlen or settings.REDIS_STREAM_MAXLEN

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        fields = {
            "topic": topic,
            "key": key,
            "type": str(value.get("type", "")),
            "notification_id": str(value.get("notification_id", "")),
            "value": json.dumps(value, default=str),
            "headers": json.dumps(headers or {}),
        }
        entry_id = await self.redis.xadd(self.stream, fields, maxlen=self.maxlen, approximate=True)
        log.debug(f"[REDIS BUS] XADD stream={self.stream} id={entry_id} type={fields['type']} key={key}")

    async def close(self) -> None:
        await self.redis.aclose()
