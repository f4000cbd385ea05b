"""
Checkpoint repository for backfill cursors.

The backfill engine persists its cursor after every committed batch so an
aborted or cancelled backfill resumes from the last acknowledged position
over the same snapshot, instead of rereading completed batches:
- Resumable backfill after a crash or an operator abort
- Progress reporting from persisted state
- Discarding the cursor on phase advance or rollback

A checkpoint is keyed by migration name. Its snapshot token is fixed for
the checkpoint lifetime: saving a cursor for another snapshot under the
same name fails until the old checkpoint is deleted.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from searchmigrate.exceptions import CheckpointError
from searchmigrate.migration.models import BackfillCursor
from searchmigrate.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_NAME,
    ATTR_POSITION,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    import aiosqlite


POSTGRESQL_CHECKPOINT_SCHEMA = """
CREATE TABLE IF NOT EXISTS backfill_checkpoints (
    name                VARCHAR(255) PRIMARY KEY,
    snapshot_token      VARCHAR(255) NOT NULL,
    position            BIGINT NOT NULL DEFAULT 0,
    documents_seen      BIGINT NOT NULL DEFAULT 0,
    documents_total     BIGINT NOT NULL DEFAULT 0,
    documents_inserted  BIGINT NOT NULL DEFAULT 0,
    documents_rejected  BIGINT NOT NULL DEFAULT 0,
    prior_target_count  BIGINT NOT NULL DEFAULT 0,
    rejected_sample     TEXT NOT NULL DEFAULT '[]',
    started_at          TIMESTAMPTZ NOT NULL,
    updated_at          TIMESTAMPTZ NOT NULL,
    completed_at        TIMESTAMPTZ
)
"""

SQLITE_CHECKPOINT_SCHEMA = """
CREATE TABLE IF NOT EXISTS backfill_checkpoints (
    name                TEXT PRIMARY KEY,
    snapshot_token      TEXT NOT NULL,
    position            INTEGER NOT NULL DEFAULT 0,
    documents_seen      INTEGER NOT NULL DEFAULT 0,
    documents_total     INTEGER NOT NULL DEFAULT 0,
    documents_inserted  INTEGER NOT NULL DEFAULT 0,
    documents_rejected  INTEGER NOT NULL DEFAULT 0,
    prior_target_count  INTEGER NOT NULL DEFAULT 0,
    rejected_sample     TEXT NOT NULL DEFAULT '[]',
    started_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL,
    completed_at        TEXT
)
"""

_COLUMNS = (
    "snapshot_token",
    "position",
    "documents_seen",
    "documents_total",
    "documents_inserted",
    "documents_rejected",
    "prior_target_count",
    "rejected_sample",
    "started_at",
    "updated_at",
    "completed_at",
)


def _snapshot_conflict(name: str, token: str) -> CheckpointError:
    return CheckpointError(
        f"Checkpoint '{name}' belongs to another snapshot; "
        f"delete it before saving a cursor for snapshot {token}"
    )


@runtime_checkable
class BackfillCheckpointRepository(Protocol):
    """
    Protocol for backfill checkpoint repositories.

    Checkpoint repositories persist the backfill cursor of each migration,
    enabling resumable backfills.
    """

    async def get(self, name: str) -> BackfillCursor | None:
        """
        Get the persisted cursor for a migration.

        Args:
            name: Migration name

        Returns:
            The cursor, or None if no checkpoint exists
        """
        ...

    async def save(self, name: str, cursor: BackfillCursor) -> None:
        """
        Persist a cursor, replacing the previous checkpoint.

        Args:
            name: Migration name
            cursor: Cursor to persist

        Raises:
            CheckpointError: If the existing checkpoint is for another snapshot
        """
        ...

    async def delete(self, name: str) -> bool:
        """
        Delete the checkpoint for a migration.

        Returns:
            True if a checkpoint was deleted
        """
        ...


class InMemoryBackfillCheckpointRepository:
    """
    In-memory implementation of the checkpoint repository for testing.

    Cursors are stored as dictionaries, so later mutation of a saved cursor
    does not change the checkpoint. All data is lost when the process
    terminates.

    Example:
        >>> repo = InMemoryBackfillCheckpointRepository()
        >>> await repo.save("products-v2", cursor)
        >>> restored = await repo.get("products-v2")
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._checkpoints: dict[str, dict[str, Any]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def get(self, name: str) -> BackfillCursor | None:
        with self._tracer.span(
            "searchmigrate.checkpoint.get",
            {ATTR_MIGRATION_NAME: name},
        ):
            async with self._lock:
                data = self._checkpoints.get(name)
                return BackfillCursor.from_dict(data) if data else None

    async def save(self, name: str, cursor: BackfillCursor) -> None:
        with self._tracer.span(
            "searchmigrate.checkpoint.save",
            {ATTR_MIGRATION_NAME: name, ATTR_POSITION: cursor.position},
        ):
            async with self._lock:
                existing = self._checkpoints.get(name)
                if existing and existing["snapshot_token"] != cursor.snapshot_token:
                    raise _snapshot_conflict(name, cursor.snapshot_token)
                self._checkpoints[name] = cursor.to_dict()

    async def delete(self, name: str) -> bool:
        with self._tracer.span(
            "searchmigrate.checkpoint.delete",
            {ATTR_MIGRATION_NAME: name},
        ):
            async with self._lock:
                return self._checkpoints.pop(name, None) is not None

    async def clear(self) -> None:
        """Clear all checkpoints. Useful for test setup/teardown."""
        async with self._lock:
            self._checkpoints.clear()


class SQLiteBackfillCheckpointRepository:
    """
    SQLite implementation of the checkpoint repository.

    Stores checkpoints in the `backfill_checkpoints` table.

    SQLite-specific adaptations:
    - Timestamps stored as TEXT in ISO 8601 format
    - Uses UPSERT with ON CONFLICT syntax (SQLite 3.24+)

    Example:
        >>> async with aiosqlite.connect("reindex.db") as db:
        ...     repo = SQLiteBackfillCheckpointRepository(db)
        ...     await repo.initialize()
        ...     await repo.save("products-v2", cursor)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the checkpoint repository.

        Args:
            connection: aiosqlite database connection
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    async def initialize(self) -> None:
        """Create the checkpoint table if it does not exist."""
        await self._connection.executescript(SQLITE_CHECKPOINT_SCHEMA)
        await self._connection.commit()

    async def get(self, name: str) -> BackfillCursor | None:
        with self._tracer.span(
            "searchmigrate.checkpoint.get",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_OPERATION: "SELECT",
            },
        ):
            cursor = await self._connection.execute(
                f"""
                SELECT {", ".join(_COLUMNS)}
                FROM backfill_checkpoints
                WHERE name = ?
                """,
                (name,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            data = dict(zip(_COLUMNS, row, strict=True))
            data["rejected_sample"] = json.loads(data["rejected_sample"])
            return BackfillCursor.from_dict(data)

    async def save(self, name: str, cursor: BackfillCursor) -> None:
        with self._tracer.span(
            "searchmigrate.checkpoint.save",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_POSITION: cursor.position,
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_OPERATION: "UPSERT",
            },
        ):
            data = cursor.to_dict()
            data["rejected_sample"] = json.dumps(data["rejected_sample"])
            result = await self._connection.execute(
                """
                INSERT INTO backfill_checkpoints
                    (name, snapshot_token, position, documents_seen, documents_total,
                     documents_inserted, documents_rejected, prior_target_count,
                     rejected_sample, started_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (name) DO UPDATE
                SET position = excluded.position,
                    documents_seen = excluded.documents_seen,
                    documents_total = excluded.documents_total,
                    documents_inserted = excluded.documents_inserted,
                    documents_rejected = excluded.documents_rejected,
                    prior_target_count = excluded.prior_target_count,
                    rejected_sample = excluded.rejected_sample,
                    updated_at = excluded.updated_at,
                    completed_at = excluded.completed_at
                WHERE backfill_checkpoints.snapshot_token = excluded.snapshot_token
                """,
                (name, *(data[column] for column in _COLUMNS)),
            )
            if result.rowcount == 0:
                await self._connection.rollback()
                raise _snapshot_conflict(name, cursor.snapshot_token)
            await self._connection.commit()

    async def delete(self, name: str) -> bool:
        with self._tracer.span(
            "searchmigrate.checkpoint.delete",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_OPERATION: "DELETE",
            },
        ):
            result = await self._connection.execute(
                "DELETE FROM backfill_checkpoints WHERE name = ?",
                (name,),
            )
            await self._connection.commit()
            return result.rowcount > 0


class PostgreSQLBackfillCheckpointRepository:
    """
    PostgreSQL implementation of the checkpoint repository.

    Stores checkpoints in the `backfill_checkpoints` table. Accepts either an
    AsyncEngine (each call runs in its own connection, writes in a
    transaction) or an AsyncConnection whose transaction the caller owns.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> repo = PostgreSQLBackfillCheckpointRepository(engine)
        >>> await repo.initialize()
        >>> await repo.save("products-v2", cursor)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the checkpoint repository.

        Args:
            conn: Database connection or engine
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def initialize(self) -> None:
        """Create the checkpoint table if it does not exist."""
        async with self._connect(transactional=True) as conn:
            await conn.execute(text(POSTGRESQL_CHECKPOINT_SCHEMA))

    async def get(self, name: str) -> BackfillCursor | None:
        with self._tracer.span(
            "searchmigrate.checkpoint.get",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "SELECT",
            },
        ):
            query = text(f"""
                SELECT {", ".join(_COLUMNS)}
                FROM backfill_checkpoints
                WHERE name = :name
            """)

            async with self._connect(transactional=False) as conn:
                result = await conn.execute(query, {"name": name})
                row = result.fetchone()

            if row is None:
                return None
            return _row_to_cursor(row._mapping)

    async def save(self, name: str, cursor: BackfillCursor) -> None:
        with self._tracer.span(
            "searchmigrate.checkpoint.save",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_POSITION: cursor.position,
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "UPSERT",
            },
        ):
            query = text("""
                INSERT INTO backfill_checkpoints
                    (name, snapshot_token, position, documents_seen, documents_total,
                     documents_inserted, documents_rejected, prior_target_count,
                     rejected_sample, started_at, updated_at, completed_at)
                VALUES (:name, :snapshot_token, :position, :documents_seen, :documents_total,
                        :documents_inserted, :documents_rejected, :prior_target_count,
                        :rejected_sample, :started_at, :updated_at, :completed_at)
                ON CONFLICT (name) DO UPDATE
                SET position = EXCLUDED.position,
                    documents_seen = EXCLUDED.documents_seen,
                    documents_total = EXCLUDED.documents_total,
                    documents_inserted = EXCLUDED.documents_inserted,
                    documents_rejected = EXCLUDED.documents_rejected,
                    prior_target_count = EXCLUDED.prior_target_count,
                    rejected_sample = EXCLUDED.rejected_sample,
                    updated_at = EXCLUDED.updated_at,
                    completed_at = EXCLUDED.completed_at
                WHERE backfill_checkpoints.snapshot_token = EXCLUDED.snapshot_token
            """)
            params = {
                "name": name,
                "snapshot_token": cursor.snapshot_token,
                "position": cursor.position,
                "documents_seen": cursor.documents_seen,
                "documents_total": cursor.documents_total,
                "documents_inserted": cursor.documents_inserted,
                "documents_rejected": cursor.documents_rejected,
                "prior_target_count": cursor.prior_target_count,
                "rejected_sample": json.dumps(cursor.rejected_sample),
                "started_at": cursor.started_at,
                "updated_at": cursor.updated_at,
                "completed_at": cursor.completed_at,
            }

            async with self._connect(transactional=True) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise _snapshot_conflict(name, cursor.snapshot_token)

    async def delete(self, name: str) -> bool:
        with self._tracer.span(
            "searchmigrate.checkpoint.delete",
            {
                ATTR_MIGRATION_NAME: name,
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "DELETE",
            },
        ):
            query = text("DELETE FROM backfill_checkpoints WHERE name = :name")
            async with self._connect(transactional=True) as conn:
                result = await conn.execute(query, {"name": name})
                return result.rowcount > 0

    @asynccontextmanager
    async def _connect(self, transactional: bool) -> AsyncIterator[AsyncConnection]:
        # A caller-supplied connection is used as is; its owner manages the transaction
        if isinstance(self.conn, AsyncEngine):
            if transactional:
                async with self.conn.begin() as connection:
                    yield connection
            else:
                async with self.conn.connect() as connection:
                    yield connection
        else:
            yield self.conn


def _row_to_cursor(row: Any) -> BackfillCursor:
    return BackfillCursor(
        snapshot_token=row["snapshot_token"],
        position=row["position"],
        documents_seen=row["documents_seen"],
        documents_total=row["documents_total"],
        documents_inserted=row["documents_inserted"],
        documents_rejected=row["documents_rejected"],
        prior_target_count=row["prior_target_count"],
        rejected_sample=json.loads(row["rejected_sample"]),
        started_at=row["started_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


__all__ = [
    "BackfillCheckpointRepository",
    "InMemoryBackfillCheckpointRepository",
    "SQLiteBackfillCheckpointRepository",
    "PostgreSQLBackfillCheckpointRepository",
    "POSTGRESQL_CHECKPOINT_SCHEMA",
    "SQLITE_CHECKPOINT_SCHEMA",
]
