"""DeadLetterRouter — one-way escape valve for permanently failed messages."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import TerminalRoutingError
from .instrumentation import (
    HookRegistry,
    dead_letter_operation,
    get_hook_registry,
    message_attributes,
)
from .models import DeadLetterEnvelope, FailureReason, utcnow
from .retry import STOP, BackoffPolicy
from .serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from .models import Message
    from .ports.dead_letter import IDeadLetterFallback
    from .ports.transport import ITransport

logger = logging.getLogger("reliable_pipeline.dead_letter")

REASON_HEADER = "dlq-failure-reason"
DETAIL_HEADER = "dlq-failure-detail"
ATTEMPTS_HEADER = "dlq-attempt-count"
FIRST_FAILED_HEADER = "dlq-first-failed-at"
LAST_FAILED_HEADER = "dlq-last-failed-at"
ORIGINAL_TOPIC_HEADER = "dlq-original-topic"
ORIGINAL_PARTITION_KEY_HEADER = "dlq-original-partition-key"
ORIGINAL_SEQUENCE_HEADER = "dlq-original-sequence-token"

_MAX_DETAIL_LENGTH = 1024


class DeadLetterRouter:
    """Routes messages that permanently failed to a dead-letter destination.

    Builds a :class:`DeadLetterEnvelope` carrying the original message and
    structured failure headers, then hands it to the transport's republish
    operation. Publishing is retried with backoff; when every attempt fails
    the optional fallback sink gets the envelope. If that is missing or also
    fails, :class:`TerminalRoutingError` is raised and the message must not
    be committed.
    """

    def __init__(
        self,
        transport: ITransport,
        *,
        destination: str = "dead-letter",
        publish_policy: BackoffPolicy | None = None,
        fallback: IDeadLetterFallback | None = None,
        clock: Callable[[], datetime] = utcnow,
        hooks: HookRegistry | None = None,
    ) -> None:
        """Configure dead-letter routing.

        Args:
            transport: Transport whose ``republish`` reaches the destination.
            destination: Dead-letter topic / queue name.
            publish_policy: Backoff between publish attempts; its
                ``max_attempts`` bounds the retries. Defaults to 5 attempts.
            fallback: Local sink used when the destination stays unreachable.
            clock: Source of failure timestamps.
            hooks: Instrumentation registry; defaults to the context registry.
        """
        self._transport = transport
        self._destination = destination
        self._policy = publish_policy or BackoffPolicy(
            max_attempts=5, base_delay=0.2, max_delay=5.0
        )
        self._fallback = fallback
        self._clock = clock
        self._hooks = hooks

    @property
    def destination(self) -> str:
        return self._destination

    def build_envelope(
        self,
        message: Message,
        failure_reason: FailureReason,
        failure_detail: str,
        attempt_count: int,
        *,
        first_failed_at: datetime | None = None,
    ) -> DeadLetterEnvelope:
        """Create the write-once envelope with dead-letter metadata headers."""
        last_failed_at = self._clock()
        first_failed_at = first_failed_at or last_failed_at
        detail = failure_detail[:_MAX_DETAIL_LENGTH]
        headers = dict(message.headers)
        headers.update(
            {
                REASON_HEADER: failure_reason.value,
                DETAIL_HEADER: detail,
                ATTEMPTS_HEADER: str(attempt_count),
                FIRST_FAILED_HEADER: first_failed_at.isoformat(),
                LAST_FAILED_HEADER: last_failed_at.isoformat(),
                ORIGINAL_TOPIC_HEADER: message.topic,
                ORIGINAL_PARTITION_KEY_HEADER: message.partition_key,
                ORIGINAL_SEQUENCE_HEADER: str(message.sequence_token),
            }
        )
        return DeadLetterEnvelope(
            original_message=message,
            failure_reason=failure_reason,
            failure_detail=detail,
            attempt_count=attempt_count,
            first_failed_at=first_failed_at,
            last_failed_at=last_failed_at,
            headers=headers,
        )

    async def route(
        self,
        message: Message,
        failure_reason: FailureReason,
        failure_detail: str,
        attempt_count: int,
        *,
        first_failed_at: datetime | None = None,
    ) -> DeadLetterEnvelope:
        """Dead-letter *message*; return the envelope once it is safely stored.

        Raises:
            TerminalRoutingError: Neither the destination nor the fallback
                accepted the envelope.
        """
        envelope = self.build_envelope(
            message,
            failure_reason,
            failure_detail,
            attempt_count,
            first_failed_at=first_failed_at,
        )
        await self.publish(envelope)
        return envelope

    async def publish(self, envelope: DeadLetterEnvelope) -> None:
        """Publish an already-built envelope (used when resuming a halted partition)."""
        registry = self._hooks or get_hook_registry()
        await registry.execute_all(
            dead_letter_operation(envelope.failure_reason),
            message_attributes(
                envelope.original_message,
                **{"dead_letter.destination": self._destination},
            ),
            lambda: self._publish_with_retry(envelope),
        )

    async def _publish_with_retry(self, envelope: DeadLetterEnvelope) -> None:
        message = envelope.original_message
        failures = 0
        while True:
            try:
                await self._transport.republish(self._destination, envelope)
                logger.info(
                    "Dead-lettered %s to %s (reason=%s, attempts=%d)",
                    message.coordinates,
                    self._destination,
                    envelope.failure_reason.value,
                    envelope.attempt_count,
                )
                return
            except Exception as e:  # noqa: BLE001
                failures += 1
                delay = self._policy.next_delay(failures)
                if delay is STOP:
                    logger.error(
                        "Dead-letter publish of %s failed %d times: %s",
                        message.coordinates,
                        failures,
                        e,
                    )
                    await self._to_fallback(envelope, e)
                    return
                logger.warning(
                    "Dead-letter publish of %s failed (attempt %d), retrying in "
                    "%.2fs: %s",
                    message.coordinates,
                    failures,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)

    async def _to_fallback(
        self, envelope: DeadLetterEnvelope, cause: Exception
    ) -> None:
        message = envelope.original_message
        if self._fallback is None:
            raise TerminalRoutingError(
                f"Could not dead-letter {message.coordinates}: {cause}",
                partition_key=message.partition_key,
                sequence_token=message.sequence_token,
            ) from cause
        try:
            await self._fallback.save(envelope)
        except Exception as e:
            raise TerminalRoutingError(
                f"Could not dead-letter {message.coordinates} nor record it "
                f"locally: {e}",
                partition_key=message.partition_key,
                sequence_token=message.sequence_token,
            ) from e
        logger.warning(
            "Recorded %s in dead-letter fallback after publish failures",
            message.coordinates,
        )


class FileDeadLetterFallback:
    """Appends envelopes as JSON lines to a local file.

    Implements ``IDeadLetterFallback``. Each line is a serialized
    :class:`DeadLetterEnvelope` that an operator tool can replay later.
    """

    def __init__(
        self, path: str | os.PathLike[str], serializer: EnvelopeSerializer | None = None
    ) -> None:
        self._path = Path(path)
        self._serializer = serializer or EnvelopeSerializer()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, envelope: DeadLetterEnvelope) -> None:
        line = self._serializer.serialize(envelope) + b"\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("ab") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())

    def read_all(self) -> list[DeadLetterEnvelope]:
        """Load every recorded envelope (for operator tooling and tests)."""
        if not self._path.exists():
            return []
        with self._path.open("rb") as fh:
            return [self._serializer.deserialize(line) for line in fh if line.strip()]
