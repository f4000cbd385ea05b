"""
Lock utilities for searchmigrate.

Provides keyed in-process locks used to serialize work per record id:
- The delete fence keeps enqueue and release exclusive per record
- The dual-write dispatcher keeps inline and replayed Target writes ordered

Example:
    >>> from searchmigrate.locks import RecordLockManager
    >>>
    >>> locks = RecordLockManager()
    >>> async with locks.acquire("sku-1", timeout=5.0):
    ...     await apply_target_write("sku-1")
"""

from searchmigrate.locks.record import (
    LockAcquisitionError,
    LockInfo,
    RecordLockManager,
)

__all__ = [
    "LockAcquisitionError",
    "LockInfo",
    "RecordLockManager",
]
