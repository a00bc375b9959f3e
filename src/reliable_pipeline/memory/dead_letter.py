"""In-memory dead-letter fallback sink."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..ports.dead_letter import IDeadLetterFallback

if TYPE_CHECKING:
    from ..models import DeadLetterEnvelope


class InMemoryDeadLetterFallback(IDeadLetterFallback):
    """Keeps fallback envelopes in a list."""

    def __init__(self) -> None:
        self._envelopes: list[DeadLetterEnvelope] = []

    async def save(self, envelope: DeadLetterEnvelope) -> None:
        self._envelopes.append(envelope)

    def get_saved(self) -> list[DeadLetterEnvelope]:
        return list(self._envelopes)
