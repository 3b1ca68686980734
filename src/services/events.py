"""Realtime publish-subscribe channel for dispatch lifecycle events.

Events are fanned out to topics derived from the event itself:

* ``case:<id>``       -- everything that happens to one case
* ``reporter:<id>``   -- what the patient's screen listens to
* ``responder:<id>``  -- offers and transitions for one driver/doctor
* ``escalations``     -- ``match_exhausted`` events for doctors/operators
* ``diagnostics``     -- failure diagnostics

Within a topic, subscribers receive events in publish order.  The
lifecycle manager publishes while holding the case lock, so per-case
order equals commit order.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, defaultdict, deque
from typing import AsyncIterator, Protocol, runtime_checkable

import orjson
import structlog

from src.models.dispatch import DispatchEvent
from src.models.enums import DispatchEventType

logger = structlog.get_logger(__name__)

ESCALATIONS_TOPIC = "escalations"
DIAGNOSTICS_TOPIC = "diagnostics"


def topics_for(event: DispatchEvent) -> list[str]:
    """Return every topic an event should be delivered to."""
    topics: list[str] = []
    if event.case_id:
        topics.append(f"case:{event.case_id}")
    if event.reporter_id:
        topics.append(f"reporter:{event.reporter_id}")
    if event.responder_id:
        topics.append(f"responder:{event.responder_id}")
    if event.type == DispatchEventType.MATCH_EXHAUSTED:
        topics.append(ESCALATIONS_TOPIC)
    elif event.type == DispatchEventType.DIAGNOSTIC:
        topics.append(DIAGNOSTICS_TOPIC)
    return topics


def _closes_case(event: DispatchEvent) -> bool:
    return (
        event.type == DispatchEventType.CASE_TRANSITIONED
        and event.state is not None
        and event.state.is_terminal
    )


@runtime_checkable
class EventPublisher(Protocol):
    """Anything the dispatch core can publish events to."""

    async def publish(self, event: DispatchEvent) -> DispatchEvent: ...


class Subscription:
    """Ordered stream of events for one topic."""

    __slots__ = ("_bus", "_queue", "topic")

    def __init__(self, bus: InMemoryEventBus, topic: str) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[DispatchEvent] = asyncio.Queue()
        self.topic = topic

    def _deliver(self, event: DispatchEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> DispatchEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def drain(self) -> list[DispatchEvent]:
        """Return everything already delivered without waiting."""
        events: list[DispatchEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus._unsubscribe(self)

    async def __aiter__(self) -> AsyncIterator[DispatchEvent]:
        while True:
            yield await self._queue.get()


class InMemoryEventBus:
    """Process-local pub-sub with per-case sequence numbers.

    A case's sequence counter is live until a ``case_transitioned`` event
    with a terminal state is published.  The counter is then moved to a
    bounded table of retired cases, so late events for that case (release
    diagnostics, for instance) still continue the sequence while memory
    stays bounded in a long-running process.

    Parameters
    ----------
    history_size:
        Number of recent events kept for inspection via :meth:`recent`,
        and number of retired case counters kept.
    """

    def __init__(self, *, history_size: int = 1_000) -> None:
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._sequences: dict[str, int] = {}
        self._retired: OrderedDict[str, int] = OrderedDict()
        self._retired_size = history_size
        self._history: deque[DispatchEvent] = deque(maxlen=history_size)

    @property
    def active_cases(self) -> int:
        """Number of cases whose sequence counter is still live."""
        return len(self._sequences)

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(self, topic)
        self._subscribers[topic].append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.topic]

    def _stamp(self, event: DispatchEvent) -> DispatchEvent:
        case_id = event.case_id
        if not case_id:
            return event

        if case_id in self._retired:
            sequence = self._retired[case_id] + 1
            self._retired[case_id] = sequence
            self._retired.move_to_end(case_id)
        else:
            sequence = self._sequences.get(case_id, 0) + 1
            if _closes_case(event):
                self._sequences.pop(case_id, None)
                self._retired[case_id] = sequence
                while len(self._retired) > self._retired_size:
                    self._retired.popitem(last=False)
            else:
                self._sequences[case_id] = sequence
        return event.model_copy(update={"sequence": sequence})

    async def publish(self, event: DispatchEvent) -> DispatchEvent:
        event = self._stamp(event)
        self._history.append(event)
        for topic in topics_for(event):
            for subscription in list(self._subscribers.get(topic, ())):
                subscription._deliver(event)
        logger.debug(
            "events.published",
            event_type=event.type.value,
            case_id=event.case_id,
            sequence=event.sequence,
        )
        return event

    def recent(
        self,
        *,
        case_id: str | None = None,
        event_type: DispatchEventType | None = None,
    ) -> list[DispatchEvent]:
        return [
            e for e in self._history
            if (case_id is None or e.case_id == case_id)
            and (event_type is None or e.type == event_type)
        ]

    async def close(self) -> None:
        self._subscribers.clear()


class RedisEventBus(InMemoryEventBus):
    """Delivers to local subscribers and mirrors every event to Redis channels.

    External UI, driver and doctor surfaces subscribe to
    ``<namespace><topic>`` on the Redis server.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "",
        history_size: int = 1_000,
    ) -> None:
        super().__init__(history_size=history_size)
        import redis.asyncio as aioredis

        self._redis = aioredis.Redis.from_url(url, decode_responses=False)
        self._namespace = namespace

    async def publish(self, event: DispatchEvent) -> DispatchEvent:
        event = await super().publish(event)
        payload = orjson.dumps(event.model_dump(mode="json"))
        for topic in topics_for(event):
            try:
                await self._redis.publish(f"{self._namespace}{topic}", payload)
            except Exception:
                # The transition is already committed; remote subscribers
                # will resync from the case record.
                logger.error(
                    "events.redis_publish_failed",
                    topic=topic,
                    event_type=event.type.value,
                    case_id=event.case_id,
                    exc_info=True,
                )
        return event

    async def close(self) -> None:
        await super().close()
        await self._redis.aclose()
