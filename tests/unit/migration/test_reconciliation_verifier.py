"""
Unit tests for ReconciliationVerifier.

Tests cover:
- Passing reports after a clean backfill
- Coverage and drift failures
- Conflict detection in sampled rejections
- raise_on_failure and metrics
"""

import pytest
import pytest_asyncio

from searchmigrate.migration.exceptions import ReconciliationMismatch
from searchmigrate.migration.metrics import ReindexMetrics
from searchmigrate.migration.models import BackfillCursor
from searchmigrate.migration.reconciliation import ReconciliationVerifier
from searchmigrate.stores import InMemoryIndexStore
from tests.fixtures import TARGET_INDEX, FailureInjectingIndexStore, fast_config, seed, to_v2


def cursor(seen: int = 5, total: int = 5, prior: int = 0) -> BackfillCursor:
    return BackfillCursor(
        snapshot_token="snap-1",
        documents_total=total,
        prior_target_count=prior,
        position=seen,
        documents_seen=seen,
    )


def verifier(**overrides) -> ReconciliationVerifier:
    overrides.setdefault("schema_version_field", "_schema")
    return ReconciliationVerifier(
        config=fast_config(**overrides), name="products", enable_tracing=False
    )


@pytest_asyncio.fixture
async def copied_target(
    seeded_legacy: InMemoryIndexStore,
    target_store: InMemoryIndexStore,
    legacy_documents: dict,
) -> InMemoryIndexStore:
    await seed(target_store, {k: to_v2(v) for k, v in legacy_documents.items()})
    return target_store


class TestVerify:
    """Tests for verify()."""

    @pytest.mark.asyncio
    async def test_clean_backfill_passes(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that matching counts and full coverage pass."""
        report = await verifier().verify(cursor(), seeded_legacy, copied_target)

        assert report.passed is True
        assert report.legacy_count == report.target_count == 5
        assert report.snapshot_token == "snap-1"

    @pytest.mark.asyncio
    async def test_incomplete_coverage_fails(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that a partial backfill never passes."""
        with pytest.raises(ReconciliationMismatch) as exc_info:
            await verifier().verify(cursor(seen=4), seeded_legacy, copied_target)

        assert exc_info.value.report.coverage_ok is False
        assert exc_info.value.report.drift_ok is True

    @pytest.mark.asyncio
    async def test_drift_beyond_tolerance_fails(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that a Target missing documents fails the drift check."""
        await copied_target.delete_if_exists("sku-001")
        await copied_target.delete_if_exists("sku-002")

        report = await verifier(reconciliation_tolerance=1).verify(
            cursor(), seeded_legacy, copied_target, raise_on_failure=False
        )

        assert report.passed is False
        assert report.drift_ok is False

    @pytest.mark.asyncio
    async def test_drift_within_tolerance_passes(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test the count tolerance."""
        await copied_target.delete_if_exists("sku-001")

        report = await verifier(reconciliation_tolerance=1).verify(
            cursor(), seeded_legacy, copied_target
        )

        assert report.passed is True

    @pytest.mark.asyncio
    async def test_rejection_with_newer_target_schema_is_expected(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that a rejection hidden by a live write is not a conflict."""
        report = await verifier().verify(
            cursor(), seeded_legacy, copied_target, rejected_sample=["sku-002", "sku-002"]
        )

        assert report.sampled == 1
        assert report.conflicts == ()

    @pytest.mark.asyncio
    async def test_rejection_hiding_old_schema_is_conflict(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that a Target document in another schema is reported."""
        await copied_target.index_or_replace("sku-003", {"title": "stale", "_schema": "1"})

        with pytest.raises(ReconciliationMismatch) as exc_info:
            await verifier().verify(
                cursor(), seeded_legacy, copied_target, rejected_sample=["sku-003"]
            )

        assert exc_info.value.report.conflicts == ("sku-003",)

    @pytest.mark.asyncio
    async def test_deleted_rejection_skipped(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that a rejected record deleted since is not a conflict."""
        await seeded_legacy.delete_if_exists("sku-004")
        await copied_target.delete_if_exists("sku-004")

        report = await verifier().verify(
            cursor(), seeded_legacy, copied_target, rejected_sample=["sku-004"]
        )

        assert report.passed is True
        assert report.sampled == 1

    @pytest.mark.asyncio
    async def test_no_schema_field_skips_conflict_check(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that conflicts are only checked with a schema version field."""
        report = await verifier(schema_version_field=None).verify(
            cursor(), seeded_legacy, copied_target, rejected_sample=["sku-001"]
        )

        assert report.sampled == 0

    @pytest.mark.asyncio
    async def test_sample_bounded(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that at most the sample size is checked."""
        report = await verifier(reconciliation_sample_size=2).verify(
            cursor(),
            seeded_legacy,
            copied_target,
            rejected_sample=["sku-001", "sku-002", "sku-003", "sku-004"],
        )

        assert report.sampled == 2

    @pytest.mark.asyncio
    async def test_transient_count_failure_retried(
        self, seeded_legacy: InMemoryIndexStore, legacy_documents: dict
    ) -> None:
        """Test that store hiccups during counting are retried."""
        target = FailureInjectingIndexStore(TARGET_INDEX)
        await seed(target.inner, {k: to_v2(v) for k, v in legacy_documents.items()})
        target.fail_next("count", 1)

        report = await verifier().verify(cursor(), seeded_legacy, target)

        assert report.passed is True
        assert target.calls("count") == 2

    @pytest.mark.asyncio
    async def test_failures_recorded_in_metrics(
        self, seeded_legacy: InMemoryIndexStore, copied_target: InMemoryIndexStore
    ) -> None:
        """Test that each failed check is counted."""
        metrics = ReindexMetrics("products", enable_metrics=False)
        await copied_target.delete_if_exists("sku-001")
        checker = ReconciliationVerifier(config=fast_config(), metrics=metrics, enable_tracing=False)

        await checker.verify(cursor(seen=4), seeded_legacy, copied_target, raise_on_failure=False)

        assert metrics.get_snapshot().reconciliation_failures == 2
