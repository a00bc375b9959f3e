"""BackoffPolicy — error classification, exponential backoff, jitter, max attempts."""

from __future__ import annotations

import asyncio
import enum
import random
from typing import TYPE_CHECKING, Final

from .exceptions import (
    MalformedChunkingError,
    StoreUnavailableError,
    TransientError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import PipelineConfig


class ErrorClass(str, enum.Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


class _Stop:
    """Sentinel returned by :meth:`BackoffPolicy.next_delay` when exhausted."""

    _instance: _Stop | None = None

    def __new__(cls) -> _Stop:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "STOP"

    def __bool__(self) -> bool:
        return False


STOP: Final = _Stop()


def default_is_retryable(error: BaseException) -> bool:
    """Fallback predicate: network-ish failures are worth another attempt."""
    return isinstance(error, (TransientError, ConnectionError, asyncio.TimeoutError))


class BackoffPolicy:
    """Retry mechanism: the business predicate supplies the judgment.

    Built-in taxonomy takes precedence over the predicate:
    ``ValidationError`` / ``MalformedChunkingError`` are never retried,
    ``TransientError`` / ``StoreUnavailableError`` / timeouts always are.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: bool = True,
        is_retryable: Callable[[Exception], bool] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Failed attempts after which :meth:`next_delay`
                returns ``STOP``. ``0`` dead-letters on the first failure.
            base_delay: Seconds multiplied by ``2**attempt_count``.
            max_delay: Cap on the un-jittered delay in seconds.
            jitter: If True, multiply by a random factor in [0.5, 1.5].
            is_retryable: Predicate over the application's own errors.
            rng: Random source (inject a seeded one in tests).
        """
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._is_retryable = is_retryable or default_is_retryable
        self._rng = rng or random.Random()  # noqa: S311

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        is_retryable: Callable[[Exception], bool] | None = None,
    ) -> BackoffPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
            is_retryable=is_retryable,
        )

    def classify(self, error: Exception) -> ErrorClass:
        """Return whether *error* deserves another attempt."""
        if isinstance(error, (ValidationError, MalformedChunkingError)):
            return ErrorClass.NON_RETRYABLE
        if isinstance(
            error, (TransientError, StoreUnavailableError, asyncio.TimeoutError)
        ):
            return ErrorClass.RETRYABLE
        if self._is_retryable(error):
            return ErrorClass.RETRYABLE
        return ErrorClass.NON_RETRYABLE

    def exhausted(self, attempt_count: int) -> bool:
        """True once *attempt_count* failed attempts reach ``max_attempts``."""
        return attempt_count >= self.max_attempts

    def next_delay(self, attempt_count: int) -> float | _Stop:
        """Delay in seconds before the next attempt, or ``STOP``.

        ``delay = min(max_delay, base_delay * 2**attempt_count) * U(0.5, 1.5)``
        """
        if self.exhausted(attempt_count):
            return STOP
        exponent = min(max(attempt_count, 0), 62)
        delay = min(self.max_delay, self.base_delay * (2**exponent))
        if self.jitter:
            delay *= self._rng.uniform(0.5, 1.5)
        return float(max(0.0, delay))
