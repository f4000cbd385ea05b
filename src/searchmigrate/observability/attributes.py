"""
Standard span and metric attributes for searchmigrate.

This module defines attribute constants used across all searchmigrate
components for consistent span naming and metrics labeling. These follow
OpenTelemetry semantic conventions where applicable.

Example:
    >>> from searchmigrate.observability.attributes import (
    ...     ATTR_RECORD_ID,
    ...     ATTR_MIGRATION_PHASE,
    ... )
    >>>
    >>> with tracer.span(
    ...     "searchmigrate.dispatcher.apply",
    ...     {
    ...         ATTR_RECORD_ID: event.record_id,
    ...         ATTR_MIGRATION_PHASE: phase.value,
    ...     },
    ... ):
    ...     pass
"""

# =============================================================================
# Record Attributes
# =============================================================================

ATTR_RECORD_ID = "searchmigrate.record.id"
"""Identifier of the document/record being written (string)."""

ATTR_OPERATION = "searchmigrate.record.operation"
"""Change operation ('upsert' or 'delete')."""

ATTR_SEQUENCE_TOKEN = "searchmigrate.record.sequence_token"
"""Sequence token of the change event (integer)."""

# =============================================================================
# Index Attributes
# =============================================================================

ATTR_INDEX_NAME = "searchmigrate.index.name"
"""Name of the index a store operation is addressed to."""

ATTR_SCHEMA_VERSION = "searchmigrate.index.schema_version"
"""Schema version of the index (string)."""

ATTR_SNAPSHOT_TOKEN = "searchmigrate.snapshot.token"
"""Point-in-time snapshot token of a backfill cursor."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_NAME = "searchmigrate.migration.name"
"""Name identifying the reindex migration."""

ATTR_MIGRATION_PHASE = "searchmigrate.migration.phase"
"""Current migration phase (e.g., 'dual_write', 'backfilling')."""

ATTR_FROM_PHASE = "searchmigrate.migration.from_phase"
"""Phase a transition starts from."""

ATTR_TO_PHASE = "searchmigrate.migration.to_phase"
"""Phase a transition moves to."""

# =============================================================================
# Backfill Attributes
# =============================================================================

ATTR_POSITION = "searchmigrate.backfill.position"
"""Cursor position within the snapshot (integer)."""

ATTR_BATCH_SIZE = "searchmigrate.backfill.batch_size"
"""Number of documents in a batch (integer)."""

ATTR_DOCUMENTS_SEEN = "searchmigrate.backfill.documents_seen"
"""Documents read from the snapshot so far (integer)."""

ATTR_DOCUMENTS_TOTAL = "searchmigrate.backfill.documents_total"
"""Documents in the snapshot at creation time (integer)."""

ATTR_DOCUMENTS_REJECTED = "searchmigrate.backfill.documents_rejected"
"""Documents rejected as already present in the target (integer)."""

# =============================================================================
# Fence Attributes
# =============================================================================

ATTR_PENDING_DELETES = "searchmigrate.fence.pending_deletes"
"""Number of deletes waiting in the fence (integer)."""

# =============================================================================
# Database (OTEL semantic)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'SELECT', 'INSERT')."""

# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    # Record
    "ATTR_RECORD_ID",
    "ATTR_OPERATION",
    "ATTR_SEQUENCE_TOKEN",
    # Index
    "ATTR_INDEX_NAME",
    "ATTR_SCHEMA_VERSION",
    "ATTR_SNAPSHOT_TOKEN",
    # Migration
    "ATTR_MIGRATION_NAME",
    "ATTR_MIGRATION_PHASE",
    "ATTR_FROM_PHASE",
    "ATTR_TO_PHASE",
    # Backfill
    "ATTR_POSITION",
    "ATTR_BATCH_SIZE",
    "ATTR_DOCUMENTS_SEEN",
    "ATTR_DOCUMENTS_TOTAL",
    "ATTR_DOCUMENTS_REJECTED",
    # Fence
    "ATTR_PENDING_DELETES",
    # Database
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
