"""PipelineConfig — validated, immutable pipeline settings."""

from __future__ import annotations

import enum
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, model_validator


class IdempotencyMode(str, enum.Enum):
    """How the idempotency mark is coupled to the business side effect.

    ``TRANSACTIONAL``: business logic writes the mark through the processing
    context inside its own transaction (the pipeline marks afterwards only
    if the handler did not).
    ``BEST_EFFORT``: the pipeline marks right after the handler returns; a
    crash between the two can repeat the side effect on redelivery.
    """

    TRANSACTIONAL = "transactional"
    BEST_EFFORT = "best_effort"


class ShutdownPolicy(str, enum.Enum):
    """What happens to in-memory partial assemblies and retry states on stop."""

    DROP = "drop"
    PERSIST = "persist"


class PipelineConfig(BaseModel):
    """All knobs of :class:`~reliable_pipeline.pipeline.ProcessingPipeline`."""

    model_config = ConfigDict(frozen=True)

    worker_count: int = Field(default=8, ge=1)
    max_records: int = Field(default=500, ge=1, description="Fetch batch size")
    fetch_timeout: float = Field(default=1.0, gt=0)
    max_buffered: int = Field(
        default=10_000, ge=1, description="Outstanding deliveries before backpressure"
    )

    max_attempts: int = Field(default=5, ge=0)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: bool = True

    retention: timedelta = Field(default=timedelta(days=7))
    max_assembly_age: timedelta = Field(default=timedelta(minutes=5))
    sweep_interval: float | None = Field(default=60.0, gt=0)
    store_timeout: float | None = Field(default=5.0, gt=0)

    idempotency_mode: IdempotencyMode = IdempotencyMode.TRANSACTIONAL
    shutdown_policy: ShutdownPolicy = ShutdownPolicy.DROP

    dead_letter_topic: str = "dead-letter"
    dead_letter_publish_attempts: int = Field(default=5, ge=1)
    business_key_header: str = "idempotency-key"

    @model_validator(mode="after")
    def _check_ranges(self) -> PipelineConfig:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must be <= max_delay")
        if self.retention <= timedelta(0):
            raise ValueError("retention must be positive")
        if self.max_assembly_age <= timedelta(0):
            raise ValueError("max_assembly_age must be positive")
        return self
