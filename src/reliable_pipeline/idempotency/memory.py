"""InMemoryIdempotencyStore — bounded, TTL-based store for tests and single processes."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ..exceptions import ConflictError, StoreUnavailableError
from ..models import ProcessedRecord, utcnow
from ..ports.idempotency import IIdempotencyStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta

    from ..models import IdempotencyKey

logger = logging.getLogger("reliable_pipeline.idempotency")


class InMemoryIdempotencyStore(IIdempotencyStore):
    """Process-local idempotency store with expiry and a hard size bound.

    Only suitable when a single process consumes the partitions; records are
    lost on restart. When ``max_entries`` is reached and nothing has expired,
    marking fails with ``StoreUnavailableError`` instead of forgetting keys.
    """

    def __init__(
        self,
        *,
        max_entries: int = 100_000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._clock = clock
        self._records: dict[str, ProcessedRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def get(self, key: IdempotencyKey | str) -> ProcessedRecord | None:
        """Return the stored record for *key* (expired or not)."""
        return self._records.get(str(key))

    async def has_processed(self, key: IdempotencyKey) -> bool:
        record = self._records.get(str(key))
        return record is not None and not record.is_expired(self._clock())

    async def mark_processed(
        self,
        key: IdempotencyKey,
        ttl: timedelta,
        *,
        uow: Any = None,  # noqa: ARG002
    ) -> None:
        async with self._lock:
            now = self._clock()
            existing = self._records.get(str(key))
            if existing is not None and not existing.is_expired(now):
                raise ConflictError(str(key))
            if existing is None and len(self._records) >= self._max_entries:
                self._sweep(now)
                if len(self._records) >= self._max_entries:
                    raise StoreUnavailableError(
                        f"Idempotency store full ({self._max_entries} entries)"
                    )
            self._records[str(key)] = ProcessedRecord(
                idempotency_key=str(key),
                first_processed_at=now,
                expires_at=now + ttl,
            )

    async def sweep_expired(self) -> int:
        async with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: datetime) -> int:
        expired = [k for k, r in self._records.items() if r.is_expired(now)]
        for k in expired:
            del self._records[k]
        if expired:
            logger.debug("Swept %d expired idempotency records", len(expired))
        return len(expired)

    def clear(self) -> None:
        """Forget every record (for testing)."""
        self._records.clear()
