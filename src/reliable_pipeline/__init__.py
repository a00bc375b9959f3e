"""Reliable message processing — idempotency, retries, dead letters, chunk reassembly."""

from __future__ import annotations

from .chunking import (
    ChunkAssembler,
    ChunkFragment,
    fragment_headers,
    split_payload,
)
from .config import IdempotencyMode, PipelineConfig, ShutdownPolicy
from .correlation import get_correlation_id, set_correlation_id
from .dead_letter import DeadLetterRouter, FileDeadLetterFallback
from .exceptions import (
    ConcurrencyError,
    ConflictError,
    InfrastructureError,
    MalformedChunkingError,
    PipelineError,
    SerializationError,
    StoreUnavailableError,
    TerminalRoutingError,
    TransientError,
    TransportError,
    ValidationError,
)
from .instrumentation import HookRegistry, get_hook_registry, set_hook_registry
from .memory import (
    InMemoryDeadLetterFallback,
    InMemoryIdempotencyStore,
    InMemorySnapshotStore,
    InMemoryTransport,
)
from .models import (
    DeadLetterEnvelope,
    FailureReason,
    IdempotencyKey,
    Message,
    ProcessedRecord,
    RetryState,
    SweepReport,
    derive_idempotency_key,
)
from .pipeline import (
    FunctionHandler,
    ProcessingContext,
    ProcessingPipeline,
    SweeperWorker,
    get_processing_context,
)
from .retry import STOP, BackoffPolicy, ErrorClass
from .serialization import EnvelopeSerializer

__all__ = [
    "STOP",
    "BackoffPolicy",
    "ChunkAssembler",
    "ChunkFragment",
    "ConcurrencyError",
    "ConflictError",
    "DeadLetterEnvelope",
    "DeadLetterRouter",
    "EnvelopeSerializer",
    "ErrorClass",
    "FailureReason",
    "FileDeadLetterFallback",
    "FunctionHandler",
    "HookRegistry",
    "IdempotencyKey",
    "IdempotencyMode",
    "InMemoryDeadLetterFallback",
    "InMemoryIdempotencyStore",
    "InMemorySnapshotStore",
    "InMemoryTransport",
    "InfrastructureError",
    "MalformedChunkingError",
    "Message",
    "PipelineConfig",
    "PipelineError",
    "ProcessedRecord",
    "ProcessingContext",
    "ProcessingPipeline",
    "RetryState",
    "SerializationError",
    "ShutdownPolicy",
    "StoreUnavailableError",
    "SweepReport",
    "SweeperWorker",
    "TerminalRoutingError",
    "TransientError",
    "TransportError",
    "ValidationError",
    "derive_idempotency_key",
    "fragment_headers",
    "get_correlation_id",
    "get_hook_registry",
    "get_processing_context",
    "set_correlation_id",
    "set_hook_registry",
    "split_payload",
]
