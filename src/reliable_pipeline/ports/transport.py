"""ITransport — the message-delivery collaborator (Kafka, in-memory, ...)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..models import DeadLetterEnvelope, Message


@runtime_checkable
class ITransport(Protocol):
    """
    Port for an at-least-once, per-partition ordered message source.

    Infrastructure adapters wrap a concrete client; the pipeline never talks
    to a broker directly.
    """

    async def fetch(self, max_records: int, timeout: float) -> list[Message]:
        """
        Return the next batch of messages, in partition order.

        Args:
            max_records: Upper bound on the batch size.
            timeout: Seconds to wait for data before returning an empty batch.
        """
        ...

    async def commit(self, message: Message) -> None:
        """Advance the partition's committed position past *message*."""
        ...

    async def republish(self, destination: str, envelope: DeadLetterEnvelope) -> None:
        """Publish a dead-letter envelope to *destination*.

        The original message key must be preserved and the envelope headers
        attached so operators can search and resubmit.
        """
        ...
