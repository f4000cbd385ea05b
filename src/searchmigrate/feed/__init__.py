"""
Change feed adapters for searchmigrate.

The change feed carries committed mutations from the primary data store
to the Dual-Write Dispatcher. This package provides the ChangeEvent model,
the ChangeFeed protocol, an in-memory feed, and the LaneRouter that keeps
per-record ordering while applying events concurrently.
"""

from searchmigrate.feed.events import ChangeEvent, ChangeOperation
from searchmigrate.feed.in_memory import InMemoryChangeFeed
from searchmigrate.feed.interface import ChangeFeed, FeedDelivery
from searchmigrate.feed.lanes import EventHandler, LaneRouter, LaneStats, lane_for

__all__ = [
    # Events
    "ChangeEvent",
    "ChangeOperation",
    # Interface
    "ChangeFeed",
    "FeedDelivery",
    # Implementations
    "InMemoryChangeFeed",
    # Lanes
    "LaneRouter",
    "LaneStats",
    "EventHandler",
    "lane_for",
]
