"""Library exceptions for the searchmigrate package."""


class SearchMigrateError(Exception):
    """Base exception for searchmigrate library."""

    pass


class IndexStoreError(SearchMigrateError):
    """
    Raised when an index store operation fails.

    Store errors are split into transient (retry with backoff) and permanent
    (surface immediately) failures. Stores should raise one of the subclasses;
    a bare IndexStoreError is treated as permanent.

    Attributes:
        index_name: Name of the index the operation addressed
        operation: Store operation that failed (e.g., "insert_if_absent")
        record_id: Record the operation addressed, if any
    """

    def __init__(
        self,
        message: str,
        index_name: str | None = None,
        operation: str | None = None,
        record_id: str | None = None,
    ) -> None:
        self.index_name = index_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(message)


class TransientStoreError(IndexStoreError):
    """Raised for failures that may succeed on retry (network, overload)."""

    pass


class StoreTimeoutError(TransientStoreError):
    """Raised when a store call exceeds its timeout."""

    def __init__(
        self,
        index_name: str | None,
        operation: str,
        timeout_seconds: float,
        record_id: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Store operation {operation} on {index_name} timed out after {timeout_seconds}s",
            index_name=index_name,
            operation=operation,
            record_id=record_id,
        )


class PermanentStoreError(IndexStoreError):
    """Raised for failures that will not succeed on retry (schema mismatch, auth)."""

    pass


class SnapshotNotFoundError(PermanentStoreError):
    """Raised when a snapshot cursor token is unknown or has expired."""

    def __init__(self, index_name: str, snapshot_token: str) -> None:
        self.snapshot_token = snapshot_token
        super().__init__(
            f"Snapshot {snapshot_token} not found on index {index_name}",
            index_name=index_name,
            operation="reopen_snapshot_cursor",
        )


class CheckpointError(SearchMigrateError):
    """Raised when there's an error with backfill checkpoint operations."""

    pass


__all__ = [
    "SearchMigrateError",
    "IndexStoreError",
    "TransientStoreError",
    "StoreTimeoutError",
    "PermanentStoreError",
    "SnapshotNotFoundError",
    "CheckpointError",
]
