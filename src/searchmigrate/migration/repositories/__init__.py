"""
Repository implementations for the reindex migration system.

Repositories:
    - BackfillCheckpointRepository: Protocol for persisted backfill cursors
    - InMemoryBackfillCheckpointRepository: In-memory implementation for tests
    - SQLiteBackfillCheckpointRepository: aiosqlite implementation
    - PostgreSQLBackfillCheckpointRepository: SQLAlchemy async implementation

Usage:
    >>> from searchmigrate.migration.repositories import (
    ...     SQLiteBackfillCheckpointRepository,
    ... )
    >>>
    >>> repo = SQLiteBackfillCheckpointRepository(db)
    >>> await repo.initialize()
    >>> cursor = await repo.get("products-v2")
"""

from searchmigrate.migration.repositories.checkpoint import (
    POSTGRESQL_CHECKPOINT_SCHEMA,
    SQLITE_CHECKPOINT_SCHEMA,
    BackfillCheckpointRepository,
    InMemoryBackfillCheckpointRepository,
    PostgreSQLBackfillCheckpointRepository,
    SQLiteBackfillCheckpointRepository,
)

__all__ = [
    "BackfillCheckpointRepository",
    "InMemoryBackfillCheckpointRepository",
    "SQLiteBackfillCheckpointRepository",
    "PostgreSQLBackfillCheckpointRepository",
    "POSTGRESQL_CHECKPOINT_SCHEMA",
    "SQLITE_CHECKPOINT_SCHEMA",
]
