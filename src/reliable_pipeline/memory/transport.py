"""InMemoryTransport — ITransport with assertion helpers for tests and embedding."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING

from ..exceptions import TransportError
from ..ports.transport import ITransport

if TYPE_CHECKING:
    from ..models import DeadLetterEnvelope, Message


class InMemoryTransport(ITransport):
    """Buffers delivered messages and records commits and republishes.

    ``deliver()`` appends messages in the order given (callers keep
    per-partition order). ``fail_republish`` makes the next N republish calls
    raise ``TransportError`` to exercise dead-letter failure paths.
    """

    def __init__(self) -> None:
        self._pending: list[Message] = []
        self._available = asyncio.Event()
        self._committed: dict[str, int] = {}
        self._commit_log: list[Message] = []
        self._republished: list[tuple[str, DeadLetterEnvelope]] = []
        self._fail_republish = 0

    def deliver(self, *messages: Message) -> None:
        """Queue messages for the next ``fetch`` calls."""
        self._pending.extend(messages)
        if self._pending:
            self._available.set()

    async def fetch(self, max_records: int, timeout: float) -> list[Message]:
        if not self._pending:
            self._available.clear()
            try:
                await asyncio.wait_for(self._available.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return []
        batch = self._pending[:max_records]
        del self._pending[:max_records]
        return batch

    async def commit(self, message: Message) -> None:
        self._committed[message.partition_key] = message.sequence_token
        self._commit_log.append(message)

    async def republish(self, destination: str, envelope: DeadLetterEnvelope) -> None:
        if self._fail_republish > 0:
            self._fail_republish -= 1
            raise TransportError(f"republish to {destination} rejected")
        self._republished.append((destination, envelope))

    def fail_republish(self, times: int = 1) -> None:
        """Make the next *times* republish calls fail."""
        self._fail_republish = times

    def committed_position(self, partition_key: str) -> int | None:
        """Last committed sequence token of a partition, or None."""
        return self._committed.get(partition_key)

    def get_committed(self) -> list[Message]:
        """Return every committed message in commit order."""
        return list(self._commit_log)

    def get_dead_lettered(
        self, destination: str | None = None
    ) -> list[DeadLetterEnvelope]:
        """Return republished envelopes, optionally for one destination."""
        return [
            env
            for dest, env in self._republished
            if destination is None or dest == destination
        ]

    def assert_dead_lettered(
        self,
        count: int = 1,
        *,
        reason: str | None = None,
        destination: str | None = None,
    ) -> None:
        """Assert exactly *count* envelopes (with *reason*) were republished."""
        envelopes = self.get_dead_lettered(destination)
        if reason is not None:
            envelopes = [e for e in envelopes if e.failure_reason.value == reason]
        by_reason: dict[str, int] = defaultdict(int)
        for env in self.get_dead_lettered(destination):
            by_reason[env.failure_reason.value] += 1
        assert len(envelopes) == count, (
            f"Expected {count} dead-lettered message(s)"
            f"{f' with reason={reason!r}' if reason else ''}, "
            f"got {len(envelopes)}. Dead-lettered: {dict(by_reason)}"
        )

    @property
    def pending(self) -> int:
        return len(self._pending)
