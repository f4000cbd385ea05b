"""
Timeout wrapper for index store calls.

Every call the coordinator makes into an IndexStore is bounded. A call
that exceeds its timeout surfaces as StoreTimeoutError, which is a
TransientStoreError and therefore eligible for retry.
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from searchmigrate.exceptions import StoreTimeoutError

T = TypeVar("T")


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float | None,
    *,
    index_name: str | None,
    operation: str,
    record_id: str | None = None,
) -> T:
    """
    Await a store call with a timeout.

    Args:
        awaitable: The store call to await
        timeout_seconds: Limit in seconds (None disables the timeout)
        index_name: Index the call addresses, for the error message
        operation: Store operation name, for the error message
        record_id: Record the call addresses, if any

    Returns:
        The result of the store call

    Raises:
        StoreTimeoutError: If the call does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError as e:
        raise StoreTimeoutError(
            index_name=index_name,
            operation=operation,
            timeout_seconds=timeout_seconds or 0.0,
            record_id=record_id,
        ) from e
