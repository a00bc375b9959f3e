"""IDeadLetterFallback — local sink used when the dead-letter destination fails."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..models import DeadLetterEnvelope


@runtime_checkable
class IDeadLetterFallback(Protocol):
    """Persist an envelope locally so the message is never silently dropped."""

    async def save(self, envelope: DeadLetterEnvelope) -> None:
        ...
