"""
Per-record lane worker pool for change feed consumption.

Change events for the same record must be applied in order, while events
for different records may be applied concurrently. The LaneRouter hashes
each record_id to one of N lanes. A lane is a single consumer task with its
own queue, so everything routed to it is serialized.

Responsibilities:
- Route each delivery to a lane by a stable hash of its record_id
- Apply events through the supplied handler, one at a time per lane
- Ack a delivery after the handler returns, nack it if the handler raises
- Apply backpressure to the feed with bounded lane queues

Usage:
    >>> router = LaneRouter(dispatcher.apply, lane_count=8)
    >>> await router.run(feed)  # returns once the feed is drained
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from searchmigrate.feed.events import ChangeEvent
from searchmigrate.feed.interface import ChangeFeed, FeedDelivery
from searchmigrate.observability import (
    ATTR_RECORD_ID,
    ATTR_SEQUENCE_TOKEN,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[Any]]


def lane_for(record_id: str, lane_count: int) -> int:
    """
    Get the lane index for a record.

    Uses CRC32 so the mapping is stable across processes (the builtin
    hash() of str is salted per process).

    Args:
        record_id: Identity of the record
        lane_count: Number of lanes

    Returns:
        Lane index in [0, lane_count)
    """
    return zlib.crc32(record_id.encode("utf-8")) % lane_count


@dataclass
class LaneStats:
    """
    Statistics for one lane.

    Attributes:
        lane: Lane index
        applied: Events applied and acked
        failed: Events whose handler raised (nacked)
    """

    lane: int
    applied: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"lane": self.lane, "applied": self.applied, "failed": self.failed}


class LaneRouter:
    """
    Serializes change events per record across a pool of lanes.

    A failing handler never stops its lane: the delivery is nacked so the
    feed redelivers it, and the lane moves on. The feed is responsible for
    holding back later events of the same record until the redelivered one
    is acked.

    Args:
        handler: Coroutine applying one event (e.g., DualWriteDispatcher.apply)
        lane_count: Number of lanes (default: 8)
        lane_capacity: Queue size per lane before the router waits (default: 100)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable tracing (default True)
    """

    def __init__(
        self,
        handler: EventHandler,
        lane_count: int = 8,
        lane_capacity: int = 100,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if lane_count < 1:
            raise ValueError(f"lane_count must be >= 1, got {lane_count}")
        if lane_capacity < 1:
            raise ValueError(f"lane_capacity must be >= 1, got {lane_capacity}")

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._handler = handler
        self._lane_count = lane_count
        self._lane_capacity = lane_capacity
        self._stats = [LaneStats(lane=i) for i in range(lane_count)]
        self._workers: list[asyncio.Task[None]] = []
        self._queues: list[asyncio.Queue[FeedDelivery | None]] = []

    @property
    def lane_count(self) -> int:
        return self._lane_count

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def lane_for(self, record_id: str) -> int:
        """Get the lane index for a record."""
        return lane_for(record_id, self._lane_count)

    async def run(self, feed: ChangeFeed) -> None:
        """
        Consume the feed until it ends, then drain every lane.

        Args:
            feed: Change feed to consume

        Raises:
            RuntimeError: If the router is already running
        """
        if self.is_running:
            raise RuntimeError("LaneRouter is already running")

        self._queues = [asyncio.Queue(maxsize=self._lane_capacity) for _ in range(self._lane_count)]
        self._workers = [
            asyncio.create_task(self._lane_worker(i), name=f"searchmigrate-lane-{i}")
            for i in range(self._lane_count)
        ]
        logger.info("Started %d change feed lanes", self._lane_count)

        try:
            async for delivery in feed:
                await self._queues[self.lane_for(delivery.event.record_id)].put(delivery)

            for queue in self._queues:
                await queue.put(None)
            await asyncio.gather(*self._workers)
        finally:
            for task in self._workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            logger.info(
                "Stopped change feed lanes: %d applied, %d failed",
                sum(s.applied for s in self._stats),
                sum(s.failed for s in self._stats),
            )

    async def _lane_worker(self, lane: int) -> None:
        queue = self._queues[lane]
        stats = self._stats[lane]

        while True:
            delivery = await queue.get()
            if delivery is None:
                return

            event = delivery.event
            with self._tracer.span(
                "searchmigrate.lane.apply",
                {
                    ATTR_RECORD_ID: event.record_id,
                    ATTR_SEQUENCE_TOKEN: event.sequence_token,
                    "searchmigrate.lane.index": lane,
                },
            ):
                try:
                    await self._handler(event)
                except Exception as e:
                    stats.failed += 1
                    logger.warning(
                        "Lane %d failed to apply %s (attempt %d): %s",
                        lane,
                        event,
                        delivery.attempt,
                        e,
                    )
                    await delivery.nack()
                    continue

            stats.applied += 1
            await delivery.ack()

    def get_stats(self) -> list[dict[str, int]]:
        """Get per-lane statistics."""
        return [s.to_dict() for s in self._stats]


__all__ = [
    "LaneRouter",
    "LaneStats",
    "EventHandler",
    "lane_for",
]
