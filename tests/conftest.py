"""Shared fixtures for reliable-pipeline tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from reliable_pipeline.config import PipelineConfig
from reliable_pipeline.instrumentation import HookRegistry, set_hook_registry
from reliable_pipeline.memory import InMemoryIdempotencyStore, InMemoryTransport
from reliable_pipeline.models import DeadLetterEnvelope, FailureReason, Message
from reliable_pipeline.pipeline import ProcessingPipeline
from reliable_pipeline.ports.handler import IMessageHandler
from reliable_pipeline.retry import default_is_retryable


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_message(
    sequence_token: int = 0,
    *,
    topic: str = "orders",
    partition_key: str = "p-0",
    payload: bytes = b"payload",
    headers: dict[str, str] | None = None,
    **kwargs: Any,
) -> Message:
    return Message(
        topic=topic,
        partition_key=partition_key,
        sequence_token=sequence_token,
        payload=payload,
        headers=headers or {},
        **kwargs,
    )


def make_envelope(
    message: Message | None = None,
    reason: FailureReason = FailureReason.TRANSIENT_ERROR,
) -> DeadLetterEnvelope:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return DeadLetterEnvelope(
        original_message=message or make_message(0),
        failure_reason=reason,
        failure_detail="down",
        attempt_count=5,
        first_failed_at=now,
        last_failed_at=now,
    )


class RecordingHandler(IMessageHandler):
    """Records processed messages; ``failures`` maps payload -> errors to raise."""

    def __init__(
        self,
        failures: dict[bytes, list[Exception]] | None = None,
        *,
        delay: float = 0.0,
        timeout: float | None = None,
    ) -> None:
        self.failures = failures or {}
        self.delay = delay
        self.timeout = timeout
        self.calls: list[Message] = []
        self.processed: list[Message] = []

    async def process(self, message: Message) -> None:
        self.calls.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        errors = self.failures.get(message.payload)
        if errors:
            raise errors.pop(0)
        self.processed.append(message)

    def is_retryable(self, error: Exception) -> bool:
        return default_is_retryable(error)


@pytest.fixture(autouse=True)
def hook_registry() -> HookRegistry:
    """Fresh instrumentation registry per test."""
    registry = HookRegistry()
    set_hook_registry(registry)
    return registry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(clock=clock)


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


def fast_config(**overrides: Any) -> PipelineConfig:
    """Config without real waiting: zero backoff, short fetch timeout."""
    settings: dict[str, Any] = {
        "worker_count": 4,
        "fetch_timeout": 0.01,
        "max_attempts": 3,
        "base_delay": 0.0,
        "max_delay": 0.0,
        "jitter": False,
        "sweep_interval": None,
        "store_timeout": 1.0,
        "dead_letter_publish_attempts": 2,
    }
    settings.update(overrides)
    return PipelineConfig(**settings)


@pytest.fixture
async def pipelines():
    """Collects started pipelines and stops them after the test."""
    created: list[ProcessingPipeline] = []
    yield created
    for pipeline in created:
        await pipeline.stop(timeout=2.0)


@pytest.fixture
def make_pipeline(
    transport: InMemoryTransport,
    store: InMemoryIdempotencyStore,
    handler: RecordingHandler,
    clock: FakeClock,
    pipelines: list[ProcessingPipeline],
):
    def factory(**kwargs: Any) -> ProcessingPipeline:
        kwargs.setdefault("config", fast_config())
        kwargs.setdefault("clock", clock)
        pipeline = ProcessingPipeline(
            kwargs.pop("transport", transport),
            kwargs.pop("handler", handler),
            kwargs.pop("idempotency_store", store),
            **kwargs,
        )
        pipelines.append(pipeline)
        return pipeline

    return factory


async def run_until_drained(
    pipeline: ProcessingPipeline,
    transport: InMemoryTransport,
    *messages: Message,
    timeout: float = 5.0,
) -> None:
    transport.deliver(*messages)
    if not pipeline.is_running:
        await pipeline.start()
    await pipeline.drain(timeout=timeout)
