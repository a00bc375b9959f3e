"""Correlation ID propagation from message headers into the async context."""

from __future__ import annotations

import contextlib
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .models import Message

CORRELATION_HEADER = "correlation-id"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


@contextlib.contextmanager
def message_correlation(message: Message) -> Iterator[str | None]:
    """Bind the message's correlation id for the duration of one attempt."""
    token = _correlation_id.set(message.headers.get(CORRELATION_HEADER))
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)
