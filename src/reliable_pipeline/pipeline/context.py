"""ProcessingContext — per-attempt state visible to business logic."""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import timedelta

    from ..models import IdempotencyKey, Message
    from ..ports.idempotency import IIdempotencyStore


@dataclass
class ProcessingContext:
    """What the pipeline knows about the attempt currently running.

    In transactional idempotency mode the handler calls
    :meth:`mark_processed` with its own session / unit of work so the mark
    commits atomically with the side effect::

        async def process(self, message):
            async with session_factory() as session, session.begin():
                session.add(Payment(...))
                await get_processing_context().mark_processed(uow=session)
    """

    message: Message
    idempotency_key: IdempotencyKey
    attempt: int
    _store: IIdempotencyStore = field(repr=False)
    _ttl: timedelta = field(repr=False)
    marked: bool = False

    async def mark_processed(self, *, uow: Any = None) -> None:
        """Record the idempotency key inside the caller's transaction.

        Raises:
            ConflictError: Another delivery of the same key won the race; the
                caller's transaction must roll back.
        """
        if self.marked:
            return
        await self._store.mark_processed(self.idempotency_key, self._ttl, uow=uow)
        self.marked = True


_current_context: ContextVar[ProcessingContext | None] = ContextVar(
    "processing_context", default=None
)


def get_processing_context() -> ProcessingContext:
    """Return the context of the attempt running in this task.

    Raises:
        LookupError: Called outside of a pipeline handler invocation.
    """
    context = _current_context.get()
    if context is None:
        raise LookupError("No message is being processed in this context")
    return context
