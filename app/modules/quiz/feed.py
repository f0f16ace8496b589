"""In-process change feed for session, participant and submission rows.

Subscribers register a table name plus equality filters and receive every
matching INSERT/UPDATE as a ``FeedEvent`` on their own bounded queue. Delivery
is best effort: a subscriber whose queue is full loses the event, so consumers
should re-fetch authoritative state instead of applying payloads as deltas.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

from app.core.logging import get_logger
from app.modules.quiz.models import FeedEvent

logger = get_logger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


class Subscription:
    def __init__(
        self, feed: "ChangeFeed", table: str, filters: dict[str, Any], maxsize: int
    ) -> None:
        self.feed = feed
        self.table = table
        self.filters = dict(filters)
        self.queue: asyncio.Queue[FeedEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, table: str, row: dict) -> bool:
        if table != self.table:
            return False
        return all(row.get(k) == v for k, v in self.filters.items())

    def offer(self, event: FeedEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Feed subscriber queue full; dropped %s on %s", event.event, self.table
            )

    async def get(self, timeout: Optional[float] = None) -> FeedEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        self.feed.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[FeedEvent]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[FeedEvent]:
        while True:
            yield await self.queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class ChangeFeed:
    """Tracks subscriptions per table and fans out row changes."""

    def __init__(self, *, queue_size: int = 256) -> None:
        self.queue_size = max(1, int(queue_size))
        self._by_table: dict[str, list[Subscription]] = {}

    def subscribe(self, table: str, **filters: Any) -> Subscription:
        sub = Subscription(self, table, filters, self.queue_size)
        self._by_table.setdefault(table, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._by_table.get(sub.table)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._by_table.pop(sub.table, None)

    def publish(self, event: str, table: str, row: dict) -> int:
        """Deliver one change to matching subscribers; returns how many got it."""
        payload = FeedEvent(event=event, table=table, new=row)
        delivered = 0
        for sub in list(self._by_table.get(table, [])):
            if sub.matches(table, row):
                sub.offer(payload)
                delivered += 1
        return delivered

    def count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._by_table.get(table, []))
        return sum(len(v) for v in self._by_table.values())
