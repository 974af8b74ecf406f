from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable
import logging
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

ENTITLEMENTS_GRANTED = "entitlements.granted"
PURCHASE_FAILED = "purchases.failed"
JOB_DEAD_LETTERED = "jobs.dead_lettered"


class EventBus:
    """In-process publish/subscribe owned by the application or worker lifespan.

    Subscribers are awaited in registration order. A failing subscriber is
    logged and does not affect the publisher or other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._closed = False

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        if self._closed:
            raise RuntimeError("event bus is closed")
        self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, topic: str, payload: dict[str, Any]) -> int:
        if self._closed:
            logger.debug("event dropped after shutdown topic=%s", topic)
            return 0

        delivered = 0
        for handler in list(self._subscribers.get(topic, ())):
            try:
                await handler(topic, payload)
            except Exception:
                logger.exception("event subscriber failed topic=%s", topic)
                continue
            delivered += 1
        return delivered

    def close(self) -> None:
        self._closed = True
        self._subscribers.clear()

    @property
    def closed(self) -> bool:
        return self._closed
