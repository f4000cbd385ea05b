"""
In-memory change feed implementation.

Useful for testing and development. Publishers push ChangeEvents directly;
consumers iterate FeedDelivery objects and settle them with ack/nack.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from searchmigrate.feed.events import ChangeEvent
from searchmigrate.feed.interface import FeedDelivery

logger = logging.getLogger(__name__)


class InMemoryChangeFeed:
    """
    In-memory change feed with per-record ordering and redelivery.

    Events for the same record_id are held back while an earlier event for
    that record is in flight, so a nacked event is always redelivered before
    anything that followed it. Events for different records are delivered
    as soon as they are published.

    Args:
        max_deliveries: Deliveries allowed per event before it is moved to
                        the dead letter list (None for unlimited)

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> await feed.publish(ChangeEvent.upsert("sku-1", {"title": "Lamp"}))
        >>> feed.close()
        >>> async for delivery in feed:
        ...     await delivery.ack()
    """

    def __init__(self, max_deliveries: int | None = None) -> None:
        if max_deliveries is not None and max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        self._max_deliveries = max_deliveries

        self._pending: dict[str, deque[FeedDelivery]] = {}
        self._in_flight: set[str] = set()
        self._ready: asyncio.Queue[str | None] = asyncio.Queue()
        self._outstanding = 0
        self._closed = False
        self._dead_letters: list[FeedDelivery] = []
        self._stats = {
            "published": 0,
            "delivered": 0,
            "acked": 0,
            "nacked": 0,
            "dead_lettered": 0,
        }

    async def publish(self, event: ChangeEvent) -> None:
        """
        Publish an event to the feed.

        Raises:
            RuntimeError: If the feed is closed
        """
        if self._closed:
            raise RuntimeError("Cannot publish to a closed change feed")

        queue = self._pending.setdefault(event.record_id, deque())
        queue.append(self._new_delivery(event, attempt=1))
        self._outstanding += 1
        self._stats["published"] += 1

        if event.record_id not in self._in_flight and len(queue) == 1:
            self._ready.put_nowait(event.record_id)

    async def publish_many(self, events: list[ChangeEvent]) -> None:
        """Publish events in order."""
        for event in events:
            await self.publish(event)

    def close(self) -> None:
        """
        Stop accepting events.

        Iteration ends once every published event has been acked or
        dead-lettered.
        """
        self._closed = True
        if self._outstanding == 0:
            self._ready.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[FeedDelivery]:
        while True:
            record_id = await self._ready.get()
            if record_id is None:
                # Let other consumers see the end of the feed too
                self._ready.put_nowait(None)
                return

            queue = self._pending.get(record_id)
            if not queue:
                continue
            delivery = queue.popleft()
            self._in_flight.add(record_id)
            self._stats["delivered"] += 1
            yield delivery

    @property
    def dead_letters(self) -> list[FeedDelivery]:
        """Deliveries that exceeded max_deliveries."""
        return list(self._dead_letters)

    @property
    def outstanding(self) -> int:
        """Events published but not yet acked or dead-lettered."""
        return self._outstanding

    def get_stats(self) -> dict[str, Any]:
        """Get delivery statistics."""
        return {**self._stats, "outstanding": self._outstanding}

    # =========================================================================
    # Settlement
    # =========================================================================

    def _new_delivery(self, event: ChangeEvent, attempt: int) -> FeedDelivery:
        return FeedDelivery(
            event=event,
            attempt=attempt,
            _on_ack=self._handle_ack,
            _on_nack=self._handle_nack,
        )

    async def _handle_ack(self, delivery: FeedDelivery) -> None:
        self._stats["acked"] += 1
        self._finish(delivery.event.record_id)

    async def _handle_nack(self, delivery: FeedDelivery) -> None:
        self._stats["nacked"] += 1
        record_id = delivery.event.record_id

        if self._max_deliveries is not None and delivery.attempt >= self._max_deliveries:
            logger.error(
                "Change event %s exhausted %d deliveries, moving to dead letters",
                delivery.event,
                delivery.attempt,
            )
            self._dead_letters.append(delivery)
            self._stats["dead_lettered"] += 1
            self._finish(record_id)
            return

        logger.debug(
            "Redelivering change event %s (attempt %d)",
            delivery.event,
            delivery.attempt + 1,
        )
        queue = self._pending.setdefault(record_id, deque())
        queue.appendleft(self._new_delivery(delivery.event, delivery.attempt + 1))
        self._in_flight.discard(record_id)
        self._ready.put_nowait(record_id)

    def _finish(self, record_id: str) -> None:
        self._in_flight.discard(record_id)
        self._outstanding -= 1

        queue = self._pending.get(record_id)
        if queue:
            self._ready.put_nowait(record_id)
        else:
            self._pending.pop(record_id, None)

        if self._closed and self._outstanding == 0:
            self._ready.put_nowait(None)


__all__ = ["InMemoryChangeFeed"]
