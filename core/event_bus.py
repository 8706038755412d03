"""In-process async publish/subscribe for flow run state changes."""

from __future__ import annotations

import asyncio
from collections import defaultdict

# Subscribers on this key receive every event regardless of its key
ALL_EVENTS = "*"


class EventBus:
    """Pub/sub backed by asyncio.Queue, keyed by flow run ID.

    Each subscriber gets its own queue; a slow reader never blocks the
    publisher or other readers.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, key: str = ALL_EVENTS) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._queues[key].append(q)
        return q

    def unsubscribe(self, key: str, q: asyncio.Queue) -> None:
        try:
            self._queues[key].remove(q)
        except ValueError:
            pass

    async def publish(self, key: str, event: dict) -> None:
        targets = list(self._queues.get(key, []))
        if key != ALL_EVENTS:
            targets += self._queues.get(ALL_EVENTS, [])
        for q in targets:
            await q.put(event)
