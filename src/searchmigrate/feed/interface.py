"""
Change feed interface.

A change feed delivers ChangeEvents from the primary data store with
at-least-once semantics and per-record ordering. Each delivery must be
settled: ``ack()`` once the event has been applied to the Legacy index,
``nack()`` to ask for redelivery.

This module provides:
- FeedDelivery: One delivery of a change event, with ack/nack
- ChangeFeed: Protocol for change feed adapters
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from searchmigrate.feed.events import ChangeEvent

SettleCallback = Callable[["FeedDelivery"], Awaitable[None]]


@dataclass
class FeedDelivery:
    """
    One delivery of a change event.

    The same event may be delivered more than once. ``attempt`` counts
    deliveries of this event, starting at 1. Settling twice is a no-op.

    Attributes:
        event: The delivered change event
        attempt: Delivery attempt number (1-based)
    """

    event: ChangeEvent
    attempt: int = 1
    _on_ack: SettleCallback | None = field(default=None, repr=False)
    _on_nack: SettleCallback | None = field(default=None, repr=False)
    _settled: bool = field(default=False, repr=False)

    @property
    def settled(self) -> bool:
        """Check if the delivery was acked or nacked."""
        return self._settled

    async def ack(self) -> None:
        """Acknowledge the event; it will not be delivered again."""
        if self._settled:
            return
        self._settled = True
        if self._on_ack is not None:
            await self._on_ack(self)

    async def nack(self) -> None:
        """Reject the event; the feed delivers it again."""
        if self._settled:
            return
        self._settled = True
        if self._on_nack is not None:
            await self._on_nack(self)


@runtime_checkable
class ChangeFeed(Protocol):
    """
    Protocol for change feed adapters.

    Guarantees required of implementations:
    - at-least-once: an un-acked event is eventually delivered again
    - per-record ordering: an event is not delivered while an earlier event
      for the same record_id is un-acked

    Example:
        >>> async for delivery in feed:
        ...     await dispatcher.apply(delivery.event)
        ...     await delivery.ack()
    """

    def __aiter__(self) -> AsyncIterator[FeedDelivery]:
        """Iterate deliveries until the feed is closed and drained."""
        ...


__all__ = [
    "FeedDelivery",
    "ChangeFeed",
    "SettleCallback",
]
