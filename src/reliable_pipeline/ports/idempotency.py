"""IIdempotencyStore — durable record of processed idempotency keys."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import timedelta

    from ..models import IdempotencyKey


@runtime_checkable
class IIdempotencyStore(Protocol):
    """
    Backing store for the effectively-once guarantee.

    ``mark_processed`` must be atomic per key: at most one caller observes
    success for a given key within its retention window. Backend failures
    surface as ``StoreUnavailableError``, never as "not processed".
    """

    async def has_processed(self, key: IdempotencyKey) -> bool:
        """Return True if *key* has an unexpired processed record."""
        ...

    async def mark_processed(
        self, key: IdempotencyKey, ttl: timedelta, *, uow: Any = None
    ) -> None:
        """Record *key* as processed for *ttl*.

        Args:
            key: The idempotency key.
            ttl: Retention window of the record.
            uow: Optional unit of work / session of the business transaction,
                for stores that can join it.

        Raises:
            ConflictError: Another caller already marked *key*.
        """
        ...

    async def sweep_expired(self) -> int:
        """Delete records past ``expires_at``; return how many were removed."""
        ...
