"""IMessageHandler — the business-logic collaborator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..models import Message


@runtime_checkable
class IMessageHandler(Protocol):
    """
    Business logic invoked once per logical message.

    Implementations may expose a ``timeout`` attribute (seconds) bounding each
    ``process`` call; a timed-out call counts as a transient failure.
    """

    async def process(self, message: Message) -> None:
        """Apply the message's side effect. Raise to signal failure."""
        ...

    def is_retryable(self, error: Exception) -> bool:
        """Classify an application error raised by :meth:`process`."""
        ...
