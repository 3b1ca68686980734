"""Builders and waiting helpers shared by the dispatch tests."""

from __future__ import annotations

import asyncio
from datetime import datetime

from src.models.dispatch import DispatchEvent, GeoPoint, Responder
from src.models.enums import DispatchEventType, ResponderKind, ResponderStatus
from src.services.events import Subscription
from src.services.registry import ResponderRegistry

# Dhaka: reporter and a driver about 0.7 km away.
DHAKA_REPORTER = (23.7461, 90.3742)
DHAKA_DRIVER = (23.7500, 90.3800)


def point(latitude: float, longitude: float, captured_at: datetime | None = None) -> GeoPoint:
    if captured_at is None:
        return GeoPoint(latitude=latitude, longitude=longitude)
    return GeoPoint(latitude=latitude, longitude=longitude, captured_at=captured_at)


def north_of(origin: tuple[float, float], km: float) -> GeoPoint:
    """A point roughly *km* kilometres due north of *origin*."""
    return point(origin[0] + km / 111.195, origin[1])


async def next_event(
    subscription: Subscription,
    event_type: DispatchEventType,
    timeout: float = 2.0,
) -> DispatchEvent:
    """Skip events until one of *event_type* arrives."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        event = await subscription.get(timeout=max(remaining, 0.001))
        if event.type == event_type:
            return event


async def go_online(
    registry: ResponderRegistry,
    responder_id: str,
    location: GeoPoint,
    kind: ResponderKind = ResponderKind.DRIVER,
) -> Responder:
    return await registry.upsert_status(responder_id, ResponderStatus.ONLINE, location, kind)
