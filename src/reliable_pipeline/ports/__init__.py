"""Ports — protocols for the collaborators the pipeline consumes."""

from __future__ import annotations

from reliable_pipeline.ports.background_worker import IBackgroundWorker
from reliable_pipeline.ports.dead_letter import IDeadLetterFallback
from reliable_pipeline.ports.handler import IMessageHandler
from reliable_pipeline.ports.idempotency import IIdempotencyStore
from reliable_pipeline.ports.snapshot import ISnapshotStore, PipelineSnapshot
from reliable_pipeline.ports.transport import ITransport

__all__ = [
    "IBackgroundWorker",
    "IDeadLetterFallback",
    "IIdempotencyStore",
    "IMessageHandler",
    "ISnapshotStore",
    "ITransport",
    "PipelineSnapshot",
]
