"""
In-process per-record lock utilities.

Record locks serialize work on one record id while letting work on other
records proceed concurrently. Locks are created on first use and discarded
once no task holds or waits for them, so the table stays proportional to
the records currently being worked on.

Usage:
    >>> locks = RecordLockManager()
    >>> async with locks.acquire("sku-1"):
    ...     await fence.enqueue("sku-1")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired record lock.

    Attributes:
        key: The record id the lock guards
        acquired_at: When the lock was acquired
        waiters: Other tasks waiting for the same key at acquisition time
    """

    key: str
    acquired_at: datetime
    waiters: int = 0


class LockAcquisitionError(Exception):
    """
    Raised when a record lock cannot be acquired in time.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    def __init__(
        self,
        key: str,
        reason: str,
        timeout: float | None = None,
    ):
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


class RecordLockManager:
    """
    Keyed asyncio locks, one per record id.

    Locks are not reentrant: a task holding the lock for a key must not
    acquire it again.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @property
    def active_keys(self) -> int:
        """Keys currently held or waited for."""
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[LockInfo]:
        """
        Hold the lock for a record id.

        Args:
            key: Record id to lock
            timeout: Maximum seconds to wait (None = wait forever)

        Yields:
            LockInfo with lock details

        Raises:
            LockAcquisitionError: If the lock is not acquired within timeout
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        waiters = self._users.get(key, 0)
        self._users[key] = waiters + 1

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError as e:
                raise LockAcquisitionError(key, "timed out", timeout=timeout) from e

            try:
                yield LockInfo(key=key, acquired_at=datetime.now(UTC), waiters=waiters)
            finally:
                lock.release()
        finally:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]


__all__ = [
    "LockAcquisitionError",
    "LockInfo",
    "RecordLockManager",
]
