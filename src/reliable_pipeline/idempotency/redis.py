"""RedisIdempotencyStore — atomic ``SET NX PX`` marks with native key expiry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from ..exceptions import ConflictError, StoreUnavailableError
from ..models import ProcessedRecord, utcnow
from ..ports.idempotency import IIdempotencyStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta

    from redis.asyncio import Redis

    from ..models import IdempotencyKey

logger = logging.getLogger("reliable_pipeline.idempotency.redis")


class RedisIdempotencyStore(IIdempotencyStore):
    """Distributed idempotency store backed by Redis.

    ``mark_processed`` uses ``SET key value NX PX ttl`` so exactly one caller
    wins per key across processes. Redis expires records itself, so
    :meth:`sweep_expired` has nothing to do. Unlike a cache, every Redis
    failure is surfaced as ``StoreUnavailableError``.
    """

    def __init__(
        self,
        redis_client: Redis[bytes],
        *,
        key_prefix: str = "idempotency:",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._clock = clock

    def _key(self, key: IdempotencyKey | str) -> str:
        return f"{self._key_prefix}{key}"

    async def has_processed(self, key: IdempotencyKey) -> bool:
        try:
            return bool(await self._redis.exists(self._key(key)))
        except RedisError as e:
            raise StoreUnavailableError(f"Redis exists failed for {key}: {e}") from e

    async def mark_processed(
        self,
        key: IdempotencyKey,
        ttl: timedelta,
        *,
        uow: Any = None,  # noqa: ARG002
    ) -> None:
        now = self._clock()
        record = ProcessedRecord(
            idempotency_key=str(key),
            first_processed_at=now,
            expires_at=now + ttl,
        )
        ttl_ms = max(1, int(ttl.total_seconds() * 1000))
        try:
            created = await self._redis.set(
                self._key(key), record.model_dump_json(), nx=True, px=ttl_ms
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Redis set failed for {key}: {e}") from e
        if not created:
            raise ConflictError(str(key))

    async def get(self, key: IdempotencyKey | str) -> ProcessedRecord | None:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as e:
            raise StoreUnavailableError(f"Redis get failed for {key}: {e}") from e
        return ProcessedRecord.model_validate_json(raw) if raw else None

    async def sweep_expired(self) -> int:
        return 0
