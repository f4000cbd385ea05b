"""
OpenTelemetry metrics for reindex migrations.

This module provides metrics instrumentation for the reindex coordinator,
tracking backfill throughput, Target write failures, the delete fence,
phase durations and reconciliation outcomes.

Instruments are created from the global OpenTelemetry MeterProvider, so
nothing is exported until the application installs an SDK provider.
Passing ``enable_metrics=False`` swaps every instrument for a no-op.

Example:
    >>> from searchmigrate.migration.metrics import ReindexMetrics
    >>>
    >>> metrics = ReindexMetrics("products-v2")
    >>> metrics.record_backfill_batch(inserted=990, rejected=10, rate_docs_per_sec=5000.0)
    >>> metrics.record_phase_duration("backfilling", 300.0)
    >>> metrics.set_pending_deletes(12)

Metrics Exposed:
    - searchmigrate.backfill.documents.inserted (Counter)
    - searchmigrate.backfill.documents.rejected (Counter)
    - searchmigrate.backfill.rate (Gauge): Current backfill documents/second
    - searchmigrate.target.writes.failed (Counter): Failed Target writes
    - searchmigrate.target.writes.parked (Gauge): Target writes waiting for replay
    - searchmigrate.fence.pending (Gauge): Deletes waiting in the fence
    - searchmigrate.fence.released (Counter): Fenced deletes replayed
    - searchmigrate.phase.duration (Histogram): Time spent in each phase
    - searchmigrate.reconciliation.failures (Counter)
    - searchmigrate.ordering.violations (Counter): Out-of-order change events

All metrics carry a 'migration' attribute for filtering.
"""

from __future__ import annotations

import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Meter, Observation

_meter: Meter | None = None


def _get_meter() -> Meter:
    """Get or create the meter for the migration namespace."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("searchmigrate.migration", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the module meter instance.

    Useful for testing to pick up a freshly installed MeterProvider.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(self, value: float, attributes: dict[str, Any] | None = None) -> None:
        pass


@dataclass(frozen=True)
class ReindexMetricSnapshot:
    """
    Snapshot of current metric values for a migration.

    Useful for testing and debugging to see what values
    would be reported to OpenTelemetry.
    """

    documents_inserted: int = 0
    documents_rejected: int = 0
    backfill_rate: float = 0.0
    failed_target_writes: int = 0
    parked_target_writes: int = 0
    pending_deletes: int = 0
    released_deletes: int = 0
    reconciliation_failures: int = 0
    ordering_violations: int = 0
    phase_durations: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "documents_inserted": self.documents_inserted,
            "documents_rejected": self.documents_rejected,
            "backfill_rate": self.backfill_rate,
            "failed_target_writes": self.failed_target_writes,
            "parked_target_writes": self.parked_target_writes,
            "pending_deletes": self.pending_deletes,
            "released_deletes": self.released_deletes,
            "reconciliation_failures": self.reconciliation_failures,
            "ordering_violations": self.ordering_violations,
            "phase_durations": dict(self.phase_durations),
        }


@dataclass
class ReindexMetrics:
    """
    Container for reindex migration metric instruments.

    Attributes:
        migration_name: Migration name used as the 'migration' metric label
        enable_metrics: Whether metrics are recorded to OpenTelemetry (default True)

    Example:
        >>> metrics = ReindexMetrics("products-v2")
        >>> with metrics.time_phase("backfilling"):
        ...     await engine.run(legacy, target)
    """

    migration_name: str
    enable_metrics: bool = True

    _inserted_counter: Any = field(default=None, init=False, repr=False)
    _rejected_counter: Any = field(default=None, init=False, repr=False)
    _failed_writes_counter: Any = field(default=None, init=False, repr=False)
    _released_counter: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _reconciliation_failures_counter: Any = field(default=None, init=False, repr=False)
    _ordering_violations_counter: Any = field(default=None, init=False, repr=False)

    # Values reported by observable gauges
    _backfill_rate_value: float = field(default=0.0, init=False, repr=False)
    _parked_writes_value: int = field(default=0, init=False, repr=False)
    _pending_deletes_value: int = field(default=0, init=False, repr=False)

    # Internal counters for snapshot
    _inserted_count: int = field(default=0, init=False, repr=False)
    _rejected_count: int = field(default=0, init=False, repr=False)
    _failed_writes_count: int = field(default=0, init=False, repr=False)
    _released_count: int = field(default=0, init=False, repr=False)
    _reconciliation_failures_count: int = field(default=0, init=False, repr=False)
    _ordering_violations_count: int = field(default=0, init=False, repr=False)
    _phase_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        """Set up OpenTelemetry metric instruments."""
        meter = _get_meter()

        self._inserted_counter = meter.create_counter(
            name="searchmigrate.backfill.documents.inserted",
            unit="documents",
            description="Documents inserted into the Target index by backfill",
        )
        self._rejected_counter = meter.create_counter(
            name="searchmigrate.backfill.documents.rejected",
            unit="documents",
            description="Backfill inserts rejected because the document already existed",
        )
        meter.create_observable_gauge(
            name="searchmigrate.backfill.rate",
            callbacks=[self._observe_backfill_rate],
            unit="documents/s",
            description="Current backfill rate in documents per second",
        )
        self._failed_writes_counter = meter.create_counter(
            name="searchmigrate.target.writes.failed",
            unit="writes",
            description="Failed writes to the Target index during dual-write",
        )
        meter.create_observable_gauge(
            name="searchmigrate.target.writes.parked",
            callbacks=[self._observe_parked_writes],
            unit="writes",
            description="Target writes parked for replay",
        )
        meter.create_observable_gauge(
            name="searchmigrate.fence.pending",
            callbacks=[self._observe_pending_deletes],
            unit="deletes",
            description="Deletes waiting in the delete fence",
        )
        self._released_counter = meter.create_counter(
            name="searchmigrate.fence.released",
            unit="deletes",
            description="Fenced deletes replayed against the Target index",
        )
        self._phase_duration_histogram = meter.create_histogram(
            name="searchmigrate.phase.duration",
            unit="s",
            description="Time spent in each migration phase in seconds",
        )
        self._reconciliation_failures_counter = meter.create_counter(
            name="searchmigrate.reconciliation.failures",
            unit="failures",
            description="Post-backfill reconciliation failures",
        )
        self._ordering_violations_counter = meter.create_counter(
            name="searchmigrate.ordering.violations",
            unit="events",
            description="Change events received out of per-record order",
        )

    def _setup_noop(self) -> None:
        self._inserted_counter = NoOpCounter()
        self._rejected_counter = NoOpCounter()
        self._failed_writes_counter = NoOpCounter()
        self._released_counter = NoOpCounter()
        self._phase_duration_histogram = NoOpHistogram()
        self._reconciliation_failures_counter = NoOpCounter()
        self._ordering_violations_counter = NoOpCounter()

    def _base_attributes(self) -> dict[str, str]:
        return {"migration": self.migration_name}

    def _observe_backfill_rate(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._backfill_rate_value, attributes=self._base_attributes())

    def _observe_parked_writes(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._parked_writes_value, attributes=self._base_attributes())

    def _observe_pending_deletes(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._pending_deletes_value, attributes=self._base_attributes())

    def record_backfill_batch(
        self,
        inserted: int,
        rejected: int,
        rate_docs_per_sec: float | None = None,
    ) -> None:
        """
        Record the outcome of one backfill batch.

        Args:
            inserted: Documents created in Target
            rejected: Documents rejected as already present
            rate_docs_per_sec: Current backfill rate
        """
        attrs = self._base_attributes()
        if inserted:
            self._inserted_counter.add(inserted, attrs)
        if rejected:
            self._rejected_counter.add(rejected, attrs)
        if rate_docs_per_sec is not None:
            self._backfill_rate_value = rate_docs_per_sec

        self._inserted_count += inserted
        self._rejected_count += rejected

    def record_failed_target_write(
        self,
        operation: str,
        error_type: str | None = None,
    ) -> None:
        """
        Record a failed write to the Target index.

        Args:
            operation: "upsert" or "delete"
            error_type: Exception class name of the failure
        """
        attrs = {**self._base_attributes(), "operation": operation}
        if error_type:
            attrs["error_type"] = error_type
        self._failed_writes_counter.add(1, attrs)
        self._failed_writes_count += 1

    def set_parked_target_writes(self, count: int) -> None:
        """Update the number of parked Target writes."""
        self._parked_writes_value = max(0, count)

    def set_pending_deletes(self, count: int) -> None:
        """Update the number of deletes waiting in the fence."""
        self._pending_deletes_value = max(0, count)

    def record_deletes_released(self, count: int) -> None:
        """Record fenced deletes replayed against Target."""
        if count <= 0:
            return
        self._released_counter.add(count, self._base_attributes())
        self._released_count += count

    def record_phase_duration(self, phase: str, duration_seconds: float) -> None:
        """
        Record time spent in a migration phase.

        Args:
            phase: Phase value (e.g., 'dual_write', 'backfilling')
            duration_seconds: Duration in seconds
        """
        attrs = {**self._base_attributes(), "phase": phase}
        self._phase_duration_histogram.record(duration_seconds, attrs)
        self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + duration_seconds

    def record_reconciliation_failure(self, failure_type: str | None = None) -> None:
        """Record a failed reconciliation."""
        attrs = self._base_attributes()
        if failure_type:
            attrs["failure_type"] = failure_type
        self._reconciliation_failures_counter.add(1, attrs)
        self._reconciliation_failures_count += 1

    def record_ordering_violation(self) -> None:
        """Record an out-of-order change event."""
        self._ordering_violations_counter.add(1, self._base_attributes())
        self._ordering_violations_count += 1

    @contextmanager
    def time_phase(self, phase: str) -> Generator[_PhaseTimer, None, None]:
        """
        Context manager for timing a migration phase.

        Example:
            >>> with metrics.time_phase("backfilling"):
            ...     await engine.run(legacy, target)
        """
        timer = _PhaseTimer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record_phase_duration(phase, timer.duration_seconds)

    def get_snapshot(self) -> ReindexMetricSnapshot:
        """Get a snapshot of current metric values."""
        return ReindexMetricSnapshot(
            documents_inserted=self._inserted_count,
            documents_rejected=self._rejected_count,
            backfill_rate=self._backfill_rate_value,
            failed_target_writes=self._failed_writes_count,
            parked_target_writes=self._parked_writes_value,
            pending_deletes=self._pending_deletes_value,
            released_deletes=self._released_count,
            reconciliation_failures=self._reconciliation_failures_count,
            ordering_violations=self._ordering_violations_count,
            phase_durations=dict(self._phase_durations),
        )


class _PhaseTimer:
    """Timer for measuring phase duration."""

    def __init__(self) -> None:
        self._start: float | None = None
        self._end: float | None = None

    def start(self) -> None:
        self._start = time.perf_counter()

    def stop(self) -> None:
        self._end = time.perf_counter()

    @property
    def duration_seconds(self) -> float:
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else time.perf_counter()
        return end - self._start


_metrics_registry: dict[str, ReindexMetrics] = {}


def get_reindex_metrics(migration_name: str, enable_metrics: bool = True) -> ReindexMetrics:
    """
    Get or create the metrics instance for a migration.

    Args:
        migration_name: Migration name
        enable_metrics: Whether to enable metrics (default True)

    Returns:
        ReindexMetrics instance for the migration
    """
    if migration_name not in _metrics_registry:
        _metrics_registry[migration_name] = ReindexMetrics(
            migration_name=migration_name,
            enable_metrics=enable_metrics,
        )
    return _metrics_registry[migration_name]


def release_reindex_metrics(migration_name: str) -> None:
    """Remove a migration's metrics instance from the registry."""
    _metrics_registry.pop(migration_name, None)


def clear_metrics_registry() -> None:
    """
    Clear the metrics registry.

    Useful for testing to reset state between tests.
    """
    _metrics_registry.clear()
    reset_meter()


__all__ = [
    "ReindexMetrics",
    "ReindexMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "get_reindex_metrics",
    "release_reindex_metrics",
    "clear_metrics_registry",
    "reset_meter",
]
