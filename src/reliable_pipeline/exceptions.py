"""Error taxonomy for reliable-pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Root exception for the entire reliable-pipeline package."""


class TransientError(PipelineError):
    """Raised for network, timeout or resource-exhaustion failures.

    Always retryable: the pipeline retries locally up to ``max_attempts``.
    """


class ValidationError(PipelineError):
    """Raised when message content is invalid and can never succeed.

    Carries structured errors: ``{field: [messages]}``.
    Never retried; the message is dead-lettered on the first failure.
    """

    def __init__(self, errors: dict[str, list[str]] | str | None = None) -> None:
        if isinstance(errors, str):
            self.errors: dict[str, list[str]] = {"__root__": [errors]}
        elif errors is None:
            self.errors = {}
        else:
            self.errors = errors
        super().__init__(_format_errors(self.errors))


def _format_errors(errors: dict[str, list[str]]) -> str:
    root = errors.get("__root__")
    if root and len(errors) == 1:
        return "; ".join(root)
    return str(errors)


class MalformedChunkingError(PipelineError):
    """Raised when a chunked message cannot be reassembled.

    Covers checksum mismatches, inconsistent fragment totals and evicted
    (incomplete) assemblies. Never retried.
    """

    def __init__(self, message: str, logical_message_id: str | None = None) -> None:
        self.logical_message_id = logical_message_id
        super().__init__(message)


class InfrastructureError(PipelineError):
    """Base class for all infrastructure-related errors."""


class StoreUnavailableError(InfrastructureError):
    """Raised when the idempotency store cannot be read or written.

    Retryable, but the pipeline must never treat it as "not yet processed".
    """


class TransportError(InfrastructureError):
    """Raised when the message transport fails."""


class SerializationError(InfrastructureError):
    """Raised when envelope or snapshot serialization fails."""


class TerminalRoutingError(InfrastructureError):
    """Raised when a message can be neither dead-lettered nor recorded locally.

    Fatal for the message: the partition it belongs to is halted until an
    operator intervenes.
    """

    def __init__(
        self,
        message: str,
        *,
        partition_key: str | None = None,
        sequence_token: int | None = None,
    ) -> None:
        self.partition_key = partition_key
        self.sequence_token = sequence_token
        super().__init__(message)


class ConcurrencyError(PipelineError):
    """Base class for concurrency-related conflicts."""


class ConflictError(ConcurrencyError):
    """Raised when an idempotency key was already marked by another caller."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Idempotency key {key!r} already marked as processed")
