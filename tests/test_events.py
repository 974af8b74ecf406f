from __future__ import annotations

import asyncio
from typing import Any

import pytest

from homehero.core.events import EventBus


def test_publish_delivers_in_subscription_order_and_isolates_failures(caplog) -> None:
    bus = EventBus()
    received: list[tuple[str, dict[str, Any]]] = []

    async def broken(topic: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("subscriber bug")

    async def recorder(topic: str, payload: dict[str, Any]) -> None:
        received.append((topic, payload))

    bus.subscribe("entitlements.granted", broken)
    bus.subscribe("entitlements.granted", recorder)

    delivered = asyncio.run(bus.publish("entitlements.granted", {"provider_id": 7}))

    assert delivered == 1
    assert received == [("entitlements.granted", {"provider_id": 7})]
    assert "event subscriber failed" in caplog.text


def test_unsubscribe_and_close() -> None:
    bus = EventBus()
    calls: list[str] = []

    async def handler(topic: str, payload: dict[str, Any]) -> None:
        calls.append(topic)

    unsubscribe = bus.subscribe("jobs.dead_lettered", handler)
    unsubscribe()
    assert asyncio.run(bus.publish("jobs.dead_lettered", {})) == 0

    bus.subscribe("jobs.dead_lettered", handler)
    bus.close()
    assert bus.closed
    assert asyncio.run(bus.publish("jobs.dead_lettered", {})) == 0
    assert calls == []
    with pytest.raises(RuntimeError):
        bus.subscribe("jobs.dead_lettered", handler)
