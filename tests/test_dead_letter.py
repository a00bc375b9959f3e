"""Tests for DeadLetterRouter and the dead-letter fallbacks."""

from __future__ import annotations

from datetime import timedelta

import pytest

from reliable_pipeline.dead_letter import (
    ATTEMPTS_HEADER,
    DETAIL_HEADER,
    FIRST_FAILED_HEADER,
    ORIGINAL_PARTITION_KEY_HEADER,
    ORIGINAL_SEQUENCE_HEADER,
    ORIGINAL_TOPIC_HEADER,
    REASON_HEADER,
    DeadLetterRouter,
    FileDeadLetterFallback,
)
from reliable_pipeline.exceptions import TerminalRoutingError
from reliable_pipeline.instrumentation import HookRegistry
from reliable_pipeline.memory import InMemoryDeadLetterFallback
from reliable_pipeline.models import FailureReason
from reliable_pipeline.retry import BackoffPolicy

from .conftest import make_message


def fast_policy(attempts: int = 2) -> BackoffPolicy:
    return BackoffPolicy(max_attempts=attempts, base_delay=0, max_delay=0, jitter=False)


@pytest.fixture
def router(transport, clock) -> DeadLetterRouter:
    return DeadLetterRouter(
        transport, destination="orders.dlq", publish_policy=fast_policy(), clock=clock
    )


async def test_route_publishes_envelope_with_failure_headers(
    router, transport, clock
) -> None:
    message = make_message(7, headers={"tenant": "acme"}, key="order-9")
    first_failed = clock.now - timedelta(minutes=1)

    envelope = await router.route(
        message,
        FailureReason.TRANSIENT_ERROR,
        "TransientError: down",
        3,
        first_failed_at=first_failed,
    )

    assert transport.get_dead_lettered("orders.dlq") == [envelope]
    assert envelope.original_message == message
    assert envelope.key == "order-9"
    assert envelope.last_failed_at == clock.now
    assert envelope.headers["tenant"] == "acme"
    assert envelope.headers[REASON_HEADER] == "TransientError"
    assert envelope.headers[DETAIL_HEADER] == "TransientError: down"
    assert envelope.headers[ATTEMPTS_HEADER] == "3"
    assert envelope.headers[FIRST_FAILED_HEADER] == first_failed.isoformat()
    assert envelope.headers[ORIGINAL_TOPIC_HEADER] == "orders"
    assert envelope.headers[ORIGINAL_PARTITION_KEY_HEADER] == "p-0"
    assert envelope.headers[ORIGINAL_SEQUENCE_HEADER] == "7"


def test_envelope_key_falls_back_to_partition_key(router) -> None:
    envelope = router.build_envelope(
        make_message(0), FailureReason.VALIDATION_ERROR, "bad", 1
    )
    assert envelope.key == "p-0"
    assert envelope.first_failed_at == envelope.last_failed_at


def test_long_failure_detail_is_truncated(router) -> None:
    envelope = router.build_envelope(
        make_message(0), FailureReason.VALIDATION_ERROR, "x" * 5000, 1
    )
    assert len(envelope.failure_detail) == 1024
    assert envelope.headers[DETAIL_HEADER] == envelope.failure_detail


async def test_publish_failure_is_retried(router, transport) -> None:
    transport.fail_republish(1)

    await router.route(make_message(0), FailureReason.VALIDATION_ERROR, "bad", 1)

    transport.assert_dead_lettered(1, reason="ValidationError")


async def test_exhausted_publish_goes_to_fallback(transport, clock) -> None:
    fallback = InMemoryDeadLetterFallback()
    router = DeadLetterRouter(
        transport, publish_policy=fast_policy(), fallback=fallback, clock=clock
    )
    transport.fail_republish(5)

    envelope = await router.route(
        make_message(0), FailureReason.VALIDATION_ERROR, "bad", 1
    )

    assert fallback.get_saved() == [envelope]
    assert transport.get_dead_lettered() == []


async def test_no_fallback_raises_terminal_routing_error(router, transport) -> None:
    transport.fail_republish(5)

    with pytest.raises(TerminalRoutingError) as exc_info:
        await router.route(make_message(4), FailureReason.VALIDATION_ERROR, "bad", 1)

    assert exc_info.value.partition_key == "p-0"
    assert exc_info.value.sequence_token == 4


async def test_failing_fallback_raises_terminal_routing_error(transport, clock) -> None:
    class BrokenFallback:
        async def save(self, envelope) -> None:
            raise OSError("disk full")

    router = DeadLetterRouter(
        transport, publish_policy=fast_policy(), fallback=BrokenFallback(), clock=clock
    )
    transport.fail_republish(5)

    with pytest.raises(TerminalRoutingError, match="disk full"):
        await router.route(make_message(0), FailureReason.VALIDATION_ERROR, "bad", 1)


async def test_publish_is_instrumented_per_reason(transport, clock) -> None:
    seen: list[tuple[str, dict]] = []

    async def hook(operation, attributes, next_handler):
        seen.append((operation, attributes))
        return await next_handler()

    registry = HookRegistry()
    registry.register(hook)
    router = DeadLetterRouter(transport, destination="dlq", clock=clock, hooks=registry)

    await router.route(make_message(2), FailureReason.STORE_UNAVAILABLE, "down", 5)

    [(operation, attributes)] = seen
    assert operation == "pipeline.dead_letter.StoreUnavailable"
    assert attributes["dead_letter.destination"] == "dlq"
    assert attributes["message.sequence_token"] == 2


async def test_file_fallback_appends_json_lines(tmp_path, router) -> None:
    fallback = FileDeadLetterFallback(tmp_path / "dlq" / "fallback.jsonl")
    first = router.build_envelope(
        make_message(0, payload=b"\x00\xff"), FailureReason.VALIDATION_ERROR, "bad", 1
    )
    second = router.build_envelope(
        make_message(1), FailureReason.TRANSIENT_ERROR, "down", 5
    )

    assert fallback.read_all() == []
    await fallback.save(first)
    await fallback.save(second)

    assert fallback.path.read_bytes().count(b"\n") == 2
    assert fallback.read_all() == [first, second]
