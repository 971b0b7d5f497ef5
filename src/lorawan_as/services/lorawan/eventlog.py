"""In-memory per-device event log with live subscriptions.

This is a debugging aid: nothing is persisted and slow subscribers lose the
oldest queued events instead of slowing the frame pipelines down.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator, Deque, Dict, Mapping, Set

from .enums import EventType
from .schemas import isoformat

__all__ = ["LoggedEvent", "Subscription", "EventLog"]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(slots=True, frozen=True)
class LoggedEvent:
    dev_eui: bytes
    type: EventType
    payload: Mapping[str, Any]
    logged_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "devEUI": self.dev_eui.hex(),
            "type": self.type.value,
            "payload": dict(self.payload),
            "loggedAt": isoformat(self.logged_at),
        }


class Subscription:
    """A consumer-owned stream of events for one device.

    Iterate with ``async for``; leaving the ``async with`` block (or calling
    :meth:`close`) unregisters it.
    """

    def __init__(self, log: "EventLog", dev_eui: bytes, maxsize: int) -> None:
        self._log = log
        self.dev_eui = dev_eui
        self._queue: asyncio.Queue[LoggedEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, event: LoggedEvent) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> LoggedEvent:
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._log._unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[LoggedEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LoggedEvent]:
        while not self.closed:
            yield await self._queue.get()


class EventLog:
    """Ring buffer of the last ``buffer_size`` events per device plus fan-out."""

    def __init__(self, *, buffer_size: int = 100, subscriber_queue_size: int = 64) -> None:
        self._buffer_size = buffer_size
        self._queue_size = subscriber_queue_size
        self._buffers: Dict[bytes, Deque[LoggedEvent]] = {}
        self._subscribers: Dict[bytes, Set[Subscription]] = {}

    def publish(self, dev_eui: bytes, event_type: EventType, payload: Mapping[str, Any]) -> LoggedEvent:
        key = bytes(dev_eui)
        event = LoggedEvent(dev_eui=key, type=event_type, payload=payload)
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = self._buffers[key] = deque(maxlen=self._buffer_size)
        buffer.append(event)
        for subscription in list(self._subscribers.get(key, ())):
            subscription.offer(event)
        logger.debug(
            "event logged",
            extra={"extra": {"dev_eui": key.hex(), "type": event_type.value}},
        )
        return event

    def recent(self, dev_eui: bytes) -> list[LoggedEvent]:
        return list(self._buffers.get(bytes(dev_eui), ()))

    def subscribe(self, dev_eui: bytes, *, replay: bool = False) -> Subscription:
        key = bytes(dev_eui)
        subscription = Subscription(self, key, self._queue_size)
        self._subscribers.setdefault(key, set()).add(subscription)
        if replay:
            for event in self.recent(key):
                subscription.offer(event)
        return subscription

    def subscriber_count(self, dev_eui: bytes) -> int:
        return len(self._subscribers.get(bytes(dev_eui), ()))

    def forget(self, dev_eui: bytes) -> None:
        """Drop buffered events of a deleted device."""

        self._buffers.pop(bytes(dev_eui), None)

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.dev_eui)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.dev_eui]
