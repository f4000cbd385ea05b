"""
Unit tests for BackfillEngine.

Tests cover:
- Copying a snapshot with insert-if-absent and transformation
- Snapshot-time totals and rejected inserts
- Batch retries that resume with the documents not yet inserted
- Checkpointing and resumption after failure or cancellation
- Concurrent batches committing a contiguous cursor
- Pause/resume, rate limiting and error wrapping
"""

import asyncio
import random
import time

import pytest

from searchmigrate.migration.backfill import BackfillEngine, RateLimiter
from searchmigrate.migration.exceptions import BackfillError, MigrationStateError
from searchmigrate.migration.metrics import ReindexMetrics
from searchmigrate.migration.models import BackfillCursor
from searchmigrate.migration.repositories.checkpoint import InMemoryBackfillCheckpointRepository
from searchmigrate.stores import InMemoryIndexStore
from tests.fixtures import (
    LEGACY_INDEX,
    TARGET_INDEX,
    FailureInjectingIndexStore,
    fast_config,
    seed,
    to_v2,
)


def engine_for(**kwargs) -> BackfillEngine:
    kwargs.setdefault("config", fast_config())
    return BackfillEngine(transformer=to_v2, name="products", enable_tracing=False, **kwargs)


class TestRun:
    """Tests for a complete backfill run."""

    @pytest.mark.asyncio
    async def test_copies_every_document(
        self,
        seeded_legacy: InMemoryIndexStore,
        target_store: InMemoryIndexStore,
        legacy_documents: dict,
    ) -> None:
        """Test that the snapshot is copied in the Target schema."""
        result = await engine_for().run(seeded_legacy, target_store)

        assert result.success is True
        assert result.documents_seen == result.documents_total == 5
        assert result.cursor.documents_inserted == 5
        assert await target_store.record_ids() == set(legacy_documents)
        assert await target_store.get("sku-003") == {**legacy_documents["sku-003"], "_schema": "2"}
        assert seeded_legacy.open_snapshot_count == 0

    @pytest.mark.asyncio
    async def test_empty_snapshot_completes(
        self, legacy_store: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test a backfill of an empty Legacy index."""
        result = await engine_for().run(legacy_store, target_store)

        assert result.success is True
        assert result.documents_total == 0

    @pytest.mark.asyncio
    async def test_total_fixed_at_snapshot_time(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that documents written after the snapshot are not backfilled."""
        engine = engine_for()
        cursor = await engine.prepare(seeded_legacy, target_store)
        await seeded_legacy.index_or_replace("sku-006", {"title": "Tent"})

        result = await engine.run(seeded_legacy, target_store, cursor=cursor)

        assert cursor.documents_total == 5
        assert result.documents_seen == 5
        assert await target_store.get("sku-006") is None

    @pytest.mark.asyncio
    async def test_existing_target_documents_rejected_not_overwritten(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that a newer live write in Target survives the backfill."""
        await target_store.index_or_replace("sku-002", {"title": "Rain jacket v2", "_schema": "2"})

        result = await engine_for().run(seeded_legacy, target_store)

        assert result.cursor.prior_target_count == 1
        assert result.cursor.documents_inserted == 4
        assert result.documents_rejected == 1
        assert result.documents_seen == 5
        assert result.rejected_sample == ("sku-002",)
        assert (await target_store.get("sku-002"))["title"] == "Rain jacket v2"

    @pytest.mark.asyncio
    async def test_rejected_sample_bounded(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that the rejected sample stops at the sample size."""
        await seed(target_store, {f"sku-00{i}": {} for i in range(1, 6)})
        engine = engine_for(config=fast_config(reconciliation_sample_size=2))

        result = await engine.run(seeded_legacy, target_store)

        assert result.documents_rejected == 5
        assert len(result.rejected_sample) == 2

    @pytest.mark.asyncio
    async def test_rejected_sample_includes_late_rejections(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that rejections after the sample fills can still replace entries."""

        class AlwaysFirstSlot(random.Random):
            def randrange(self, *args, **kwargs) -> int:
                return 0

        await seed(target_store, {f"sku-00{i}": {} for i in range(1, 6)})
        engine = engine_for(
            config=fast_config(reconciliation_sample_size=2), rng=AlwaysFirstSlot()
        )

        result = await engine.run(seeded_legacy, target_store)

        assert sorted(result.rejected_sample) == ["sku-002", "sku-005"]
        assert result.cursor.rejected_sample == list(result.rejected_sample)

    @pytest.mark.asyncio
    async def test_progress_reported_per_batch(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test progress callbacks after every committed batch."""
        seen = []

        await engine_for().run(
            seeded_legacy, target_store, progress_callback=lambda p: seen.append(p.documents_seen)
        )

        assert seen == [2, 4, 5, 5]

    @pytest.mark.asyncio
    async def test_metrics_recorded(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that batch counters reach the metrics."""
        await target_store.index_or_replace("sku-001", {})
        metrics = ReindexMetrics("products", enable_metrics=False)

        await engine_for(metrics=metrics).run(seeded_legacy, target_store)

        snapshot = metrics.get_snapshot()
        assert snapshot.documents_inserted == 4
        assert snapshot.documents_rejected == 1

    @pytest.mark.asyncio
    async def test_second_run_rejected_while_running(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that one engine runs one backfill at a time."""
        engine = engine_for()
        engine.pause()
        first = asyncio.create_task(engine.run(seeded_legacy, target_store))
        await asyncio.sleep(0.01)

        with pytest.raises(MigrationStateError):
            await engine.run(seeded_legacy, target_store)
        with pytest.raises(MigrationStateError):
            await engine.prepare(seeded_legacy, target_store)

        engine.resume()
        assert (await first).success is True

    @pytest.mark.asyncio
    async def test_completed_cursor_runs_nothing(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that a finished cursor is reported as is."""
        first = await engine_for().run(seeded_legacy, target_store)
        await target_store.clear()

        again = await engine_for().run(seeded_legacy, target_store, cursor=first.cursor)

        assert again.success is True
        assert again.documents_seen == 5
        assert await target_store.count() == 0


class TestRetries:
    """Tests for batch retries and failures."""

    @pytest.mark.asyncio
    async def test_retry_skips_already_inserted_documents(
        self, seeded_legacy: InMemoryIndexStore
    ) -> None:
        """Test that a retried batch resumes at the failed document."""
        target = FailureInjectingIndexStore(TARGET_INDEX)
        failed = False

        async def fail_once_on_sku4(record_id: str | None) -> None:
            nonlocal failed
            if record_id == "sku-004" and not failed:
                failed = True
                target.fail_next("insert_if_absent", 1)

        target.before("insert_if_absent", fail_once_on_sku4)

        result = await engine_for().run(seeded_legacy, target)

        assert result.success is True
        assert result.cursor.documents_inserted == 5
        assert result.documents_rejected == 0
        assert target.calls("insert_if_absent") == 6

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_backfill_error(
        self, seeded_legacy: InMemoryIndexStore
    ) -> None:
        """Test that a persistent outage aborts with the committed position."""
        target = FailureInjectingIndexStore(TARGET_INDEX)
        repo = InMemoryBackfillCheckpointRepository(enable_tracing=False)

        async def outage_from_sku3(record_id: str | None) -> None:
            if record_id == "sku-003":
                target.fail_always("insert_if_absent")

        target.before("insert_if_absent", outage_from_sku3)

        with pytest.raises(BackfillError) as exc_info:
            await engine_for(checkpoint_repo=repo).run(seeded_legacy, target)

        assert exc_info.value.last_position == 2
        checkpoint = await repo.get("products")
        assert checkpoint is not None
        assert checkpoint.position == 2
        assert checkpoint.documents_seen == 2

    @pytest.mark.asyncio
    async def test_snapshot_open_failure(self, target_store: InMemoryIndexStore) -> None:
        """Test that failing to open the snapshot is a BackfillError."""
        legacy = FailureInjectingIndexStore(LEGACY_INDEX)
        legacy.fail_always("open_snapshot_cursor", permanent=True)

        with pytest.raises(BackfillError):
            await engine_for().run(legacy, target_store)

    @pytest.mark.asyncio
    async def test_store_timeout_retried(self, seeded_legacy: InMemoryIndexStore) -> None:
        """Test that a hung insert times out and is retried."""
        target = FailureInjectingIndexStore(TARGET_INDEX)
        hung = False

        async def hang_once(record_id: str | None) -> None:
            nonlocal hung
            if not hung:
                hung = True
                await asyncio.sleep(1.0)

        target.before("insert_if_absent", hang_once)
        engine = engine_for(config=fast_config(store_timeout_seconds=0.05))

        result = await engine.run(seeded_legacy, target)

        assert result.success is True
        assert result.cursor.documents_inserted == 5


class TestResume:
    """Tests for checkpointing and resumption."""

    @pytest.mark.asyncio
    async def test_resume_after_failure(self, seeded_legacy: InMemoryIndexStore) -> None:
        """Test that a new engine resumes from the persisted cursor."""
        target = FailureInjectingIndexStore(TARGET_INDEX)
        repo = InMemoryBackfillCheckpointRepository(enable_tracing=False)
        failing = True

        async def fail_sku3(record_id: str | None) -> None:
            if failing and record_id == "sku-003":
                target.fail_next("insert_if_absent", 1, permanent=True)

        target.before("insert_if_absent", fail_sku3)

        with pytest.raises(BackfillError):
            await engine_for(checkpoint_repo=repo).run(seeded_legacy, target)

        failing = False
        result = await engine_for(checkpoint_repo=repo).run(seeded_legacy, target)

        assert result.success is True
        assert result.documents_seen == 5
        assert result.cursor.documents_inserted == 5
        assert result.documents_rejected == 0
        assert (await repo.get("products")).is_complete

    @pytest.mark.asyncio
    async def test_cancel_and_resume(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that cancellation stops after the current batch and can resume."""
        engine = engine_for()

        result = await engine.run(
            seeded_legacy, target_store, progress_callback=lambda _: engine.cancel()
        )

        assert result.cancelled is True
        assert result.success is False
        assert result.cursor.position == 2
        assert await target_store.count() == 2

        resumed = await engine.run(seeded_legacy, target_store, cursor=result.cursor)

        assert resumed.success is True
        assert resumed.documents_seen == 5
        assert resumed.cursor.snapshot_token == result.cursor.snapshot_token

    @pytest.mark.asyncio
    async def test_rejected_sample_survives_resume(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that rejections from before a restart stay in the sample."""
        await target_store.index_or_replace("sku-001", {"_schema": "2"})
        repo = InMemoryBackfillCheckpointRepository(enable_tracing=False)
        first = engine_for(checkpoint_repo=repo)

        await first.run(seeded_legacy, target_store, progress_callback=lambda _: first.cancel())
        assert (await repo.get("products")).rejected_sample == ["sku-001"]

        result = await engine_for(checkpoint_repo=repo).run(seeded_legacy, target_store)

        assert result.success is True
        assert result.rejected_sample == ("sku-001",)

    @pytest.mark.asyncio
    async def test_checkpoint_saved_per_batch(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that the checkpoint follows the committed position."""
        repo = InMemoryBackfillCheckpointRepository(enable_tracing=False)
        positions = []
        engine = engine_for(checkpoint_repo=repo)

        async for _ in engine.stream(seeded_legacy, target_store):
            positions.append((await repo.get("products")).position)

        assert positions == [2, 4, 5, 5]

    @pytest.mark.asyncio
    async def test_resume_with_closed_snapshot_fails(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that a cursor over a discarded snapshot cannot resume."""
        cursor = BackfillCursor(snapshot_token="gone", documents_total=5, position=2)

        with pytest.raises(BackfillError):
            await engine_for().run(seeded_legacy, target_store, cursor=cursor)


class TestConcurrency:
    """Tests for concurrent batches."""

    @pytest.mark.asyncio
    async def test_batches_overlap(self, seeded_legacy: InMemoryIndexStore) -> None:
        """Test that several batches are in flight at once."""
        target = FailureInjectingIndexStore(TARGET_INDEX)
        inside = 0
        peak = 0

        async def track(record_id: str | None) -> None:
            nonlocal inside, peak
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

        target.before("insert_if_absent", track)
        engine = engine_for(config=fast_config(max_concurrent_batches=3))

        result = await engine.run(seeded_legacy, target)

        assert result.success is True
        assert peak >= 2

    @pytest.mark.asyncio
    async def test_cursor_commits_contiguous_prefix(
        self, seeded_legacy: InMemoryIndexStore
    ) -> None:
        """Test that a slow first batch holds back the cursor."""
        target = FailureInjectingIndexStore(TARGET_INDEX)

        async def slow_first(record_id: str | None) -> None:
            if record_id == "sku-001":
                await asyncio.sleep(0.05)

        target.before("insert_if_absent", slow_first)
        engine = engine_for(config=fast_config(max_concurrent_batches=3))
        positions = []

        async for progress in engine.stream(seeded_legacy, target):
            positions.append(progress.documents_seen)

        assert positions == [2, 4, 5, 5]


class TestPauseAndRate:
    """Tests for pause/resume and rate limiting."""

    @pytest.mark.asyncio
    async def test_pause_holds_new_batches(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that a paused engine reads nothing until resumed."""
        engine = engine_for()
        engine.pause()
        task = asyncio.create_task(engine.run(seeded_legacy, target_store))
        await asyncio.sleep(0.01)

        assert engine.is_paused is True
        assert engine.is_running is True
        assert await target_store.count() == 0

        engine.resume()
        result = await task

        assert result.success is True

    @pytest.mark.asyncio
    async def test_cancel_wakes_paused_engine(
        self, seeded_legacy: InMemoryIndexStore, target_store: InMemoryIndexStore
    ) -> None:
        """Test that cancelling a paused run ends it."""
        engine = engine_for()
        engine.pause()
        task = asyncio.create_task(engine.run(seeded_legacy, target_store))
        await asyncio.sleep(0.01)

        engine.cancel()
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.cancelled is True
        assert result.cursor.position == 0

    @pytest.mark.asyncio
    async def test_rate_limiter_disabled(self) -> None:
        """Test that a zero rate never waits."""
        limiter = RateLimiter(0)
        start = time.monotonic()

        await limiter.wait(1_000_000)

        assert time.monotonic() - start < 0.05

    @pytest.mark.asyncio
    async def test_rate_limiter_waits_when_exhausted(self) -> None:
        """Test that exceeding the bucket sleeps."""
        limiter = RateLimiter(1000)
        await limiter.wait(1000)
        start = time.monotonic()

        await limiter.wait(100)

        assert time.monotonic() - start >= 0.05
