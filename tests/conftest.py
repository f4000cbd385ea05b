"""
Shared pytest fixtures for the searchmigrate library tests.

This module provides test fixtures including:
- Index store fixtures (legacy_store, target_store, seeded_legacy)
- Migration fixtures (reindex_config, checkpoint_repo, metrics)
- SQLite fixtures (sqlite_connection)
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from searchmigrate.migration import metrics as metrics_module
from searchmigrate.migration.metrics import ReindexMetrics, clear_metrics_registry
from searchmigrate.migration.models import ReindexConfig
from searchmigrate.migration.repositories.checkpoint import InMemoryBackfillCheckpointRepository
from searchmigrate.stores import InMemoryIndexStore
from tests.fixtures import LEGACY_INDEX, TARGET_INDEX, fast_config, seed

# ============================================================================
# OpenTelemetry SDK Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# ============================================================================
# Sample Data
# ============================================================================

LEGACY_DOCUMENTS: dict[str, dict[str, Any]] = {
    "sku-001": {"title": "Trail shoe", "price": 120},
    "sku-002": {"title": "Rain jacket", "price": 210},
    "sku-003": {"title": "Wool socks", "price": 18},
    "sku-004": {"title": "Headlamp", "price": 45},
    "sku-005": {"title": "Camp stove", "price": 89},
}


@pytest.fixture
def legacy_documents() -> dict[str, dict[str, Any]]:
    """Documents used to seed the Legacy index."""
    return {record_id: dict(body) for record_id, body in LEGACY_DOCUMENTS.items()}


# ============================================================================
# Index Store Fixtures
# ============================================================================


@pytest.fixture
def legacy_store() -> InMemoryIndexStore:
    """Provide an empty in-memory Legacy index."""
    return InMemoryIndexStore(LEGACY_INDEX, enable_tracing=False)


@pytest.fixture
def target_store() -> InMemoryIndexStore:
    """Provide an empty in-memory Target index."""
    return InMemoryIndexStore(TARGET_INDEX, enable_tracing=False)


@pytest_asyncio.fixture
async def seeded_legacy(
    legacy_store: InMemoryIndexStore,
    legacy_documents: dict[str, dict[str, Any]],
) -> InMemoryIndexStore:
    """
    Provide a Legacy index holding the sample documents.

    Args:
        legacy_store: The Legacy store fixture.
        legacy_documents: The sample documents fixture.
    """
    await seed(legacy_store, legacy_documents)
    return legacy_store


# ============================================================================
# Migration Fixtures
# ============================================================================


@pytest.fixture
def reindex_config() -> ReindexConfig:
    """Provide a ReindexConfig with small batches and sleep-free retries."""
    return fast_config()


@pytest.fixture
def checkpoint_repo() -> InMemoryBackfillCheckpointRepository:
    """Provide a fresh in-memory checkpoint repository."""
    return InMemoryBackfillCheckpointRepository()


@pytest.fixture
def metrics() -> ReindexMetrics:
    """Provide a ReindexMetrics instance that records nothing to OpenTelemetry."""
    return ReindexMetrics("test-migration", enable_metrics=False)


@pytest.fixture(autouse=True)
def _clear_metrics_registry() -> Generator[None, None, None]:
    """Reset the module-level metrics registry around every test."""
    clear_metrics_registry()
    yield
    clear_metrics_registry()


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Provide a raw aiosqlite connection to an in-memory database.

    Creates a fresh in-memory SQLite database for each test.
    The connection is automatically closed after the test.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row

    yield conn

    await conn.close()


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader(monkeypatch: pytest.MonkeyPatch) -> Generator[Any, None, None]:
    """
    Provide an InMemoryMetricReader for testing metrics.

    Creates a fresh metric reader and meter provider for each test and binds
    the migration meter to it. The global MeterProvider only accepts one
    assignment per process, so the module meter is patched instead.

    Yields:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    monkeypatch.setattr(
        metrics_module, "_meter", provider.get_meter("searchmigrate.migration", version="1.0.0")
    )

    yield reader

    provider.shutdown()
