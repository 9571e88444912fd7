from typing import Protocol, runtime_checkable

@runtime_checkable
class EventBusPort(Protocol):
    """Delivery side of the notification outbox (email/push fan-out lives behind it)."""
    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...
