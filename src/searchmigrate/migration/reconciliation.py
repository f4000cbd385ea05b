"""
ReconciliationVerifier - Checks Target against Legacy after backfill.

Runs once the backfill has completed and the delete fence has been
released, before the migration may leave BACKFILLING. The checks:

    - Coverage: the backfill processed every snapshot document
      (documents_seen == documents_total)
    - Drift: live Legacy and Target counts differ by at most the
      configured tolerance
    - Conflicts: for a sample of rejected inserts, the Target document is in
      the Target schema version. A rejection is expected when live traffic
      wrote a newer copy first; a Target document in any other schema means
      the rejection hid a genuinely conflicting write.

documents_seen + prior_target_count is reported next to documents_total
for operators; it is not a pass/fail criterion because documents written by
live traffic are counted on both sides.

Usage:
    >>> verifier = ReconciliationVerifier(config=ReindexConfig(schema_version_field="_schema"))
    >>> report = await verifier.verify(cursor, legacy, target, engine.rejected_sample)
    >>> report.passed
    True
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING

from searchmigrate.migration.exceptions import ErrorHandler, ReconciliationMismatch
from searchmigrate.migration.models import BackfillCursor, ReconciliationReport, ReindexConfig
from searchmigrate.observability import (
    ATTR_DOCUMENTS_REJECTED,
    ATTR_DOCUMENTS_SEEN,
    ATTR_DOCUMENTS_TOTAL,
    ATTR_MIGRATION_NAME,
    ATTR_SCHEMA_VERSION,
    ATTR_SNAPSHOT_TOKEN,
    Tracer,
    create_tracer,
)
from searchmigrate.stores import IndexStore, call_with_timeout

if TYPE_CHECKING:
    from searchmigrate.migration.metrics import ReindexMetrics

logger = logging.getLogger(__name__)


class ReconciliationVerifier:
    """
    Verifies Target against Legacy after a completed backfill.

    Example:
        >>> verifier = ReconciliationVerifier(name="products-v2")
        >>> try:
        ...     report = await verifier.verify(cursor, legacy, target)
        ... except ReconciliationMismatch as e:
        ...     for reason in e.report.failures:
        ...         logger.error("Reconciliation: %s", reason)
    """

    def __init__(
        self,
        *,
        config: ReindexConfig | None = None,
        error_handler: ErrorHandler | None = None,
        metrics: ReindexMetrics | None = None,
        name: str = "reindex",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._config = config or ReindexConfig()
        self._error_handler = error_handler or ErrorHandler()
        self._metrics = metrics
        self._name = name

    async def verify(
        self,
        cursor: BackfillCursor,
        legacy: IndexStore,
        target: IndexStore,
        rejected_sample: Sequence[str] = (),
        *,
        raise_on_failure: bool = True,
    ) -> ReconciliationReport:
        """
        Reconcile Target against Legacy.

        Args:
            cursor: Cursor of the completed backfill.
            legacy: Legacy index store.
            target: Target index store.
            rejected_sample: Record ids whose backfill insert was rejected.
            raise_on_failure: Raise on a failing report (default True).

        Returns:
            The ReconciliationReport.

        Raises:
            ReconciliationMismatch: If the report fails and raise_on_failure is set.
        """
        with self._tracer.span(
            "searchmigrate.reconciliation.verify",
            {
                ATTR_MIGRATION_NAME: self._name,
                ATTR_SNAPSHOT_TOKEN: cursor.snapshot_token,
                ATTR_DOCUMENTS_SEEN: cursor.documents_seen,
                ATTR_DOCUMENTS_TOTAL: cursor.documents_total,
                ATTR_DOCUMENTS_REJECTED: cursor.documents_rejected,
                ATTR_SCHEMA_VERSION: target.target.schema_version,
            },
        ):
            start_time = time.monotonic()

            legacy_count = await self._count(legacy)
            target_count = await self._count(target)
            sampled, conflicts = await self._check_conflicts(target, rejected_sample)

            report = ReconciliationReport(
                snapshot_token=cursor.snapshot_token,
                documents_seen=cursor.documents_seen,
                documents_total=cursor.documents_total,
                prior_target_count=cursor.prior_target_count,
                legacy_count=legacy_count,
                target_count=target_count,
                tolerance=self._config.reconciliation_tolerance,
                sampled=sampled,
                conflicts=tuple(conflicts),
            )
            duration = time.monotonic() - start_time

            if report.passed:
                logger.info(
                    "Reconciliation passed for %s: legacy=%d, target=%d, seen=%d/%d "
                    "(seen+prior=%d), %d rejections sampled in %.2fs",
                    self._name,
                    legacy_count,
                    target_count,
                    report.documents_seen,
                    report.documents_total,
                    report.seen_plus_prior,
                    sampled,
                    duration,
                )
                return report

            logger.warning(
                "Reconciliation FAILED for %s: %s",
                self._name,
                "; ".join(report.failures),
            )
            if self._metrics is not None:
                if not report.coverage_ok:
                    self._metrics.record_reconciliation_failure("coverage")
                if not report.drift_ok:
                    self._metrics.record_reconciliation_failure("drift")
                if report.conflicts:
                    self._metrics.record_reconciliation_failure("conflict")

            if raise_on_failure:
                raise ReconciliationMismatch(report, migration_name=self._name)
            return report

    async def _count(self, store: IndexStore) -> int:
        return await self._error_handler.execute_with_retry(
            lambda: call_with_timeout(
                store.count(),
                self._config.store_timeout_seconds,
                index_name=store.target.name,
                operation="count",
            ),
            operation_name="reconciliation.count",
            migration_name=self._name,
        )

    async def _check_conflicts(
        self,
        target: IndexStore,
        rejected_sample: Sequence[str],
    ) -> tuple[int, list[str]]:
        field = self._config.schema_version_field
        sample_size = self._config.reconciliation_sample_size
        if field is None or sample_size == 0 or not rejected_sample:
            return 0, []

        candidates = list(dict.fromkeys(rejected_sample))
        if len(candidates) > sample_size:
            candidates = random.sample(candidates, sample_size)  # nosec B311 - statistical sampling

        expected = str(target.target.schema_version)
        conflicts = []
        for record_id in candidates:
            document = await self._error_handler.execute_with_retry(
                lambda record_id=record_id: call_with_timeout(
                    target.get(record_id),
                    self._config.store_timeout_seconds,
                    index_name=target.target.name,
                    operation="get",
                    record_id=record_id,
                ),
                operation_name="reconciliation.get",
                migration_name=self._name,
            )
            # Deleted since the rejection (e.g. by a released fenced delete)
            if document is None:
                continue
            if str(document.get(field)) != expected:
                conflicts.append(record_id)
                logger.warning(
                    "Rejected insert for %s conflicts with Target document in schema %r "
                    "(expected %r)",
                    record_id,
                    document.get(field),
                    expected,
                )

        return len(candidates), conflicts


__all__ = ["ReconciliationVerifier"]
