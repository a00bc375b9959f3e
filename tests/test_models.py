"""Tests for the shared message and bookkeeping models."""

from __future__ import annotations

import pydantic
import pytest

from reliable_pipeline.models import (
    IdempotencyKey,
    RetryState,
    derive_idempotency_key,
)

from .conftest import make_message


def test_message_coordinates() -> None:
    assert make_message(42, partition_key="p-3").coordinates == "orders/p-3@42"


def test_message_is_immutable() -> None:
    message = make_message(0)
    with pytest.raises(pydantic.ValidationError):
        message.payload = b"other"


def test_negative_sequence_token_is_rejected() -> None:
    with pytest.raises(pydantic.ValidationError):
        make_message(-1)


def test_business_key_from_header() -> None:
    message = make_message(5, headers={"idempotency-key": "order-1"})
    assert derive_idempotency_key(message) == IdempotencyKey("order-1", "business")


def test_business_key_callable_wins_over_header() -> None:
    message = make_message(5, headers={"idempotency-key": "order-1"}, key="k-9")
    key = derive_idempotency_key(message, lambda m: m.key)
    assert key == IdempotencyKey("k-9", "business")


def test_position_key_when_no_business_key() -> None:
    key = derive_idempotency_key(make_message(5), lambda m: None)
    assert key == IdempotencyKey("orders:p-0:5", "position")
    assert str(key) == "orders:p-0:5"


def test_custom_header_name() -> None:
    message = make_message(1, headers={"event-id": "evt-1"})
    assert derive_idempotency_key(message, header="event-id").source == "business"
    assert derive_idempotency_key(message).source == "position"


def test_retry_state_records_failures(clock) -> None:
    state = RetryState(first_attempt_at=clock.now)
    clock.advance(seconds=3)

    state.record_failure(TimeoutError("slow"), clock.now)

    assert state.attempt_count == 1
    assert state.last_error == "TimeoutError: slow"
    assert state.last_failed_at == clock.now
