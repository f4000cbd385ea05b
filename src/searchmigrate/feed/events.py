"""
Change events emitted by the primary data store.

A ChangeEvent is produced once per committed mutation in the primary store
and consumed by the Dual-Write Dispatcher. Events are immutable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChangeOperation(str, Enum):
    """Kind of mutation a change event describes."""

    UPSERT = "upsert"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """
    A committed create/update or delete of one record.

    Ordering matters per record_id only: the change feed delivers events for
    the same record in commit order, identified by an increasing
    sequence_token. Events for different records may interleave freely.

    Attributes:
        record_id: Identity of the changed record
        operation: UPSERT for create/update, DELETE for removal
        payload: Document body in the Legacy schema (UPSERT only)
        sequence_token: Monotonic per-record commit sequence
        occurred_at: When the mutation was committed (UTC)

    Example:
        >>> event = ChangeEvent.upsert("sku-1", {"title": "Lamp"}, sequence_token=7)
        >>> event.is_delete
        False
        >>> ChangeEvent.delete("sku-1", sequence_token=8).payload is None
        True
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(
        ...,
        min_length=1,
        description="Identity of the changed record",
    )
    operation: ChangeOperation = Field(
        ...,
        description="Kind of mutation",
    )
    payload: dict[str, Any] | None = Field(
        default=None,
        description="Document body in the Legacy schema (UPSERT only)",
    )
    sequence_token: int = Field(
        default=0,
        ge=0,
        description="Monotonic per-record commit sequence",
    )
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the mutation was committed (UTC)",
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_delete_payload(cls, data: Any) -> Any:
        # Delete payloads carry no meaning downstream
        if isinstance(data, dict) and data.get("operation") in (
            ChangeOperation.DELETE,
            ChangeOperation.DELETE.value,
        ):
            data = dict(data)
            data["payload"] = None
        return data

    @model_validator(mode="after")
    def _check_payload(self) -> Self:
        if self.operation is ChangeOperation.UPSERT and self.payload is None:
            raise ValueError("UPSERT events require a payload")
        return self

    @classmethod
    def upsert(
        cls,
        record_id: str,
        payload: dict[str, Any],
        sequence_token: int = 0,
    ) -> ChangeEvent:
        """Create an UPSERT event."""
        return cls(
            record_id=record_id,
            operation=ChangeOperation.UPSERT,
            payload=payload,
            sequence_token=sequence_token,
        )

    @classmethod
    def delete(cls, record_id: str, sequence_token: int = 0) -> ChangeEvent:
        """Create a DELETE event."""
        return cls(
            record_id=record_id,
            operation=ChangeOperation.DELETE,
            sequence_token=sequence_token,
        )

    @property
    def is_delete(self) -> bool:
        """Check if this event removes the record."""
        return self.operation is ChangeOperation.DELETE

    def __str__(self) -> str:
        return (
            f"ChangeEvent({self.operation.value}, "
            f"record_id={self.record_id}, "
            f"seq={self.sequence_token})"
        )


__all__ = [
    "ChangeOperation",
    "ChangeEvent",
]
