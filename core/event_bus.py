"""In-process async publish/subscribe for live schedule-run events."""

from __future__ import annotations

import asyncio
from collections import defaultdict


class EventBus:
    """Lightweight pub/sub backed by asyncio.Queue.

    Keys are execution ids.  A streaming "run now" request subscribes before
    the run starts and receives every pipeline event of that execution.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, key: str) -> asyncio.Queue:
        """Return a queue that will receive all future events for *key*."""
        q: asyncio.Queue = asyncio.Queue()
        self._queues[key].append(q)
        return q

    def unsubscribe(self, key: str, q: asyncio.Queue) -> None:
        queues = self._queues.get(key)
        if not queues:
            return
        if q in queues:
            queues.remove(q)
        if not queues:
            del self._queues[key]

    async def publish(self, key: str, event: dict) -> None:
        """Deliver *event* to every subscriber currently registered for *key*."""
        for q in list(self._queues.get(key, [])):
            await q.put(event)
