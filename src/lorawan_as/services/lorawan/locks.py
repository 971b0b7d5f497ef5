"""Keyed asyncio locks with idle eviction."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
import time
from typing import AsyncIterator, Callable, Dict, Hashable

__all__ = ["KeyedLock"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0
    last_used: float = 0.0


class KeyedLock:
    """One :class:`asyncio.Lock` per key, created on demand.

    Waiters for the same key are served in arrival order (``asyncio.Lock`` is
    FIFO).  Entries nobody holds or waits for are dropped by :meth:`sweep` once
    they have been idle for ``idle_seconds``.
    """

    def __init__(self, *, idle_seconds: float = 300.0, clock: Callable[[], float] | None = None) -> None:
        self._entries: Dict[Hashable, _Entry] = {}
        self._idle_seconds = idle_seconds
        self._clock = clock or time.monotonic

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            entry.last_used = self._clock()

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def sweep(self) -> int:
        """Drop idle entries and return how many were removed."""

        now = self._clock()
        stale = [
            key
            for key, entry in self._entries.items()
            if entry.holders == 0 and now - entry.last_used >= self._idle_seconds
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("evicted idle locks", extra={"extra": {"count": len(stale)}})
        return len(stale)
