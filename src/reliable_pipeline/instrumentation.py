"""Instrumentation hooks — wrap pipeline operations for tracing, logging, metrics.

Every instrumented call goes through :meth:`HookRegistry.execute_all` with one
of these operation names:

- ``pipeline.process.<topic>``: one handler attempt
- ``pipeline.dead_letter.<reason>``: one dead-letter publication
- ``pipeline.sweep``: one expiration sweep cycle
"""

from __future__ import annotations

import fnmatch
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .correlation import get_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from .models import FailureReason, Message

SWEEP_OPERATION = "pipeline.sweep"

_PATTERN_CACHE_LIMIT = 1024


def process_operation(topic: str) -> str:
    return f"pipeline.process.{topic}"


def dead_letter_operation(reason: FailureReason) -> str:
    return f"pipeline.dead_letter.{reason.value}"


def message_attributes(message: Message, **extra: Any) -> dict[str, Any]:
    """Standard span attributes for an operation on *message*."""
    attributes: dict[str, Any] = {
        "message.topic": message.topic,
        "message.partition_key": message.partition_key,
        "message.sequence_token": message.sequence_token,
        "correlation_id": get_correlation_id(),
    }
    attributes.update(extra)
    return attributes


@runtime_checkable
class InstrumentationHook(Protocol):
    """Async middleware around one pipeline operation.

    A hook must await ``next_handler()`` exactly once and return its result;
    exceptions from the operation should propagate unchanged.
    """

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any: ...


class HookRegistration:
    """A hook plus the operations and topics it applies to.

    ``operations`` are fnmatch patterns; ``topics`` restricts the hook to
    operations whose ``message.topic`` attribute is listed (operations without
    a topic, such as sweeps, always match).
    """

    def __init__(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: Iterable[str] | None = None,
        topics: Iterable[str] | None = None,
    ) -> None:
        self.hook = hook
        self.priority = priority
        self.operations = tuple(operations or ())
        self.topics = frozenset(topics or ())
        self.enabled = True
        self._seen: dict[str, bool] = {}

    def applies_to(self, operation: str, attributes: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        topic = attributes.get("message.topic")
        if self.topics and topic is not None and topic not in self.topics:
            return False
        return self._operation_matches(operation)

    def _operation_matches(self, operation: str) -> bool:
        if not self.operations:
            return True
        cached = self._seen.get(operation)
        if cached is None:
            if len(self._seen) >= _PATTERN_CACHE_LIMIT:
                self._seen.clear()
            cached = any(fnmatch.fnmatchcase(operation, p) for p in self.operations)
            self._seen[operation] = cached
        return cached


class HookRegistry:
    """Ordered set of hooks; lower ``priority`` wraps outermost."""

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []

    def __len__(self) -> int:
        return len(self._registrations)

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: Iterable[str] | None = None,
        topics: Iterable[str] | None = None,
    ) -> HookRegistration:
        registration = HookRegistration(
            hook, priority=priority, operations=operations, topics=topics
        )
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        self._registrations.remove(registration)

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* wrapped by every hook that applies to *operation*."""
        hooks = [
            r.hook for r in self._registrations if r.applies_to(operation, attributes)
        ]
        call = next_handler
        for hook in reversed(hooks):
            call = _bind(hook, operation, attributes, call)
        return await call()

    def clear(self) -> None:
        self._registrations.clear()


def _bind(
    hook: InstrumentationHook,
    operation: str,
    attributes: dict[str, Any],
    inner: Callable[[], Awaitable[Any]],
) -> Callable[[], Awaitable[Any]]:
    def call() -> Awaitable[Any]:
        return hook(operation, attributes, inner)

    return call


_registry: ContextVar[HookRegistry | None] = ContextVar(
    "reliable_pipeline_hooks", default=None
)


def get_hook_registry() -> HookRegistry:
    """Registry of the current context, created on first use.

    Each context (and therefore each test) gets its own registry unless one
    was installed with :func:`set_hook_registry`.
    """
    registry = _registry.get()
    if registry is None:
        registry = HookRegistry()
        _registry.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    _registry.set(registry)
