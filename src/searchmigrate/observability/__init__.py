"""
Observability utilities for searchmigrate.

This module provides tracing and standard attribute definitions for
consistent observability across all searchmigrate components.

Example:
    >>> from searchmigrate.observability import create_tracer, ATTR_RECORD_ID
    >>>
    >>> class MyDispatcher:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
    ...
    ...     async def apply(self, record_id: str) -> None:
    ...         with self._tracer.span("my_dispatcher.apply", {ATTR_RECORD_ID: record_id}):
    ...             ...
"""

from searchmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENTS_REJECTED,
    ATTR_DOCUMENTS_SEEN,
    ATTR_DOCUMENTS_TOTAL,
    ATTR_FROM_PHASE,
    ATTR_INDEX_NAME,
    ATTR_MIGRATION_NAME,
    ATTR_MIGRATION_PHASE,
    ATTR_OPERATION,
    ATTR_PENDING_DELETES,
    ATTR_POSITION,
    ATTR_RECORD_ID,
    ATTR_SCHEMA_VERSION,
    ATTR_SEQUENCE_TOKEN,
    ATTR_SNAPSHOT_TOKEN,
    ATTR_TO_PHASE,
)
from searchmigrate.observability.tracer import (
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "create_tracer",
    # Attributes
    "ATTR_RECORD_ID",
    "ATTR_OPERATION",
    "ATTR_SEQUENCE_TOKEN",
    "ATTR_INDEX_NAME",
    "ATTR_SCHEMA_VERSION",
    "ATTR_SNAPSHOT_TOKEN",
    "ATTR_MIGRATION_NAME",
    "ATTR_MIGRATION_PHASE",
    "ATTR_FROM_PHASE",
    "ATTR_TO_PHASE",
    "ATTR_POSITION",
    "ATTR_BATCH_SIZE",
    "ATTR_DOCUMENTS_SEEN",
    "ATTR_DOCUMENTS_TOTAL",
    "ATTR_DOCUMENTS_REJECTED",
    "ATTR_PENDING_DELETES",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
