"""
Shared test fixtures for the searchmigrate test suite.

This module provides reusable test infrastructure including:
- FailureInjectingIndexStore: IndexStore wrapper for chaos tests
- MockTracer: Tracer recording spans for assertions
- Test configuration helpers (fast retry policies)
- Document helpers for seeding stores

Usage:
    from tests.fixtures import FailureInjectingIndexStore, fast_config

    store = FailureInjectingIndexStore(TARGET_INDEX)
    store.fail_next("insert_if_absent", 2)
"""

from typing import Any

from searchmigrate.migration.exceptions import RetryConfig
from searchmigrate.migration.models import ReindexConfig
from searchmigrate.stores import IndexStore, IndexTarget
from tests.fixtures.stores import FailureInjectingIndexStore, OperationFaults
from tests.fixtures.tracing import MockTracer

LEGACY_INDEX = IndexTarget("products_v1", "memory://legacy", "1")
TARGET_INDEX = IndexTarget("products_v2", "memory://target", "2")

NO_DELAY_RETRY = RetryConfig(
    max_attempts=3,
    base_delay_ms=0.0,
    max_delay_ms=0.0,
    jitter_factor=0.0,
)


def fast_config(**overrides: Any) -> ReindexConfig:
    """
    Create a ReindexConfig with retries that never sleep.

    Args:
        **overrides: ReindexConfig fields to override

    Returns:
        ReindexConfig suitable for unit tests
    """
    values: dict[str, Any] = {
        "batch_size": 2,
        "max_backfill_rate": 0,
        "store_timeout_seconds": 1.0,
        "batch_retry": NO_DELAY_RETRY,
        "target_write_retry": NO_DELAY_RETRY,
    }
    values.update(overrides)
    return ReindexConfig(**values)


def to_v2(document: dict[str, Any]) -> dict[str, Any]:
    """Transform a Legacy (schema 1) document to the Target schema."""
    return {**document, "_schema": "2"}


async def seed(store: IndexStore, records: dict[str, dict[str, Any]]) -> None:
    """Write documents into a store."""
    for record_id, body in records.items():
        await store.index_or_replace(record_id, body)


__all__ = [
    # Stores
    "FailureInjectingIndexStore",
    "OperationFaults",
    "LEGACY_INDEX",
    "TARGET_INDEX",
    # Config
    "NO_DELAY_RETRY",
    "fast_config",
    # Documents
    "to_v2",
    "seed",
    # Tracing
    "MockTracer",
]
