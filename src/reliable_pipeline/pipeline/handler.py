"""FunctionHandler — adapt plain coroutines to IMessageHandler."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..ports.handler import IMessageHandler
from ..retry import default_is_retryable

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from ..models import Message


class FunctionHandler(IMessageHandler):
    """Wrap ``async def process(message)`` plus an optional retry predicate.

    Usage::

        handler = FunctionHandler(
            apply_payment,
            is_retryable=lambda e: isinstance(e, PaymentGatewayTimeout),
            timeout=10.0,
        )
    """

    def __init__(
        self,
        process: Callable[[Message], Coroutine[Any, Any, None]],
        *,
        is_retryable: Callable[[Exception], bool] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._process = process
        self._is_retryable = is_retryable or default_is_retryable
        self.timeout = timeout

    async def process(self, message: Message) -> None:
        await self._process(message)

    def is_retryable(self, error: Exception) -> bool:
        return self._is_retryable(error)
