"""Message, idempotency and dead-letter models shared by every component."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Callable


def utcnow() -> datetime:
    """Timezone-aware UTC now (default clock)."""
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """Immutable unit of delivery handed over by the transport.

    ``partition_key`` groups ordering; ``sequence_token`` is monotonic within
    a partition (an offset for log-based transports).
    """

    model_config = ConfigDict(
        frozen=True, ser_json_bytes="base64", val_json_bytes="base64"
    )

    topic: str
    partition_key: str
    sequence_token: int = Field(..., ge=0)
    payload: bytes = b""
    headers: dict[str, str] = Field(default_factory=dict)
    delivery_timestamp: datetime = Field(default_factory=utcnow)
    key: str | None = Field(default=None, description="Record / business key")
    partition: int | None = Field(
        default=None, description="Transport partition number, if any"
    )

    @property
    def coordinates(self) -> str:
        """Human-readable delivery coordinates, e.g. ``orders/p-3@42``."""
        return f"{self.topic}/{self.partition_key}@{self.sequence_token}"


@dataclass(frozen=True)
class IdempotencyKey:
    """Deterministic identifier guaranteeing at most one durable effect.

    ``source`` is ``"business"`` when derived from a caller-supplied logical
    identifier and ``"position"`` for the ``(topic, partition, sequence)``
    fallback.
    """

    value: str
    source: Literal["business", "position"] = "business"

    def __str__(self) -> str:
        return self.value


def derive_idempotency_key(
    message: Message,
    business_key: Callable[[Message], str | None] | None = None,
    *,
    header: str = "idempotency-key",
) -> IdempotencyKey:
    """Derive the idempotency key of *message*.

    Uses *business_key* when given, otherwise the *header* value; falls back
    to the delivery coordinates when neither yields a non-empty key.
    """
    logical = business_key(message) if business_key else message.headers.get(header)
    if logical:
        return IdempotencyKey(str(logical), "business")
    return IdempotencyKey(
        f"{message.topic}:{message.partition_key}:{message.sequence_token}",
        "position",
    )


class ProcessedRecord(BaseModel):
    """Persisted fact that an idempotency key produced its side effect."""

    model_config = ConfigDict(frozen=True)

    idempotency_key: str
    first_processed_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class RetryState:
    """Per in-flight message retry bookkeeping.

    ``attempt_count`` is the number of failed processing attempts so far.
    """

    first_attempt_at: datetime
    attempt_count: int = 0
    last_error: str | None = None
    last_failed_at: datetime | None = None

    def record_failure(self, error: BaseException, at: datetime) -> None:
        self.attempt_count += 1
        self.last_error = f"{type(error).__name__}: {error}"
        self.last_failed_at = at


class FailureReason(str, enum.Enum):
    VALIDATION_ERROR = "ValidationError"
    TRANSIENT_ERROR = "TransientError"
    MALFORMED_CHUNKING = "MalformedChunking"
    STORE_UNAVAILABLE = "StoreUnavailable"


class DeadLetterEnvelope(BaseModel):
    """Write-once record of a permanently failed message."""

    model_config = ConfigDict(frozen=True)

    original_message: Message
    failure_reason: FailureReason
    failure_detail: str = ""
    attempt_count: int = Field(default=0, ge=0)
    first_failed_at: datetime
    last_failed_at: datetime
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Original headers plus dead-letter metadata headers",
    )

    @property
    def key(self) -> str:
        """Key used on the dead-letter destination (original key preserved)."""
        return self.original_message.key or self.original_message.partition_key


@dataclass
class SweepReport:
    """Outcome of one expiration sweep cycle."""

    expired_records: int = 0
    evicted_assemblies: list[str] = field(default_factory=list)
    dead_lettered: int = 0
