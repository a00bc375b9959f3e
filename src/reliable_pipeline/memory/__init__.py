"""In-memory adapters for testing and single-process embedding."""

from __future__ import annotations

from ..idempotency.memory import InMemoryIdempotencyStore
from .dead_letter import InMemoryDeadLetterFallback
from .snapshot import InMemorySnapshotStore
from .transport import InMemoryTransport

__all__ = [
    "InMemoryDeadLetterFallback",
    "InMemoryIdempotencyStore",
    "InMemorySnapshotStore",
    "InMemoryTransport",
]
