"""Per-partition ordering state and the commit watermark."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..chunking.splitter import is_fragment

if TYPE_CHECKING:
    from ..models import DeadLetterEnvelope, IdempotencyKey, Message


@dataclass(eq=False)
class Delivery:
    """A message moving through the pipeline.

    ``sources`` are the transport deliveries this one stands for: itself for
    an ordinary message, every fragment for a reassembled one. A source is
    ``done`` once its position may be committed.
    """

    message: Message
    sources: list[Delivery] = field(default_factory=list)
    fragment: bool = False
    done: bool = False
    effect_applied: bool = False
    key: IdempotencyKey | None = None

    @property
    def position(self) -> str:
        """``topic:partition_key:sequence_token``; keys per-delivery retry state."""
        m = self.message
        return f"{m.topic}:{m.partition_key}:{m.sequence_token}"

    @classmethod
    def received(cls, message: Message) -> Delivery:
        delivery = cls(message, fragment=is_fragment(message))
        delivery.sources.append(delivery)
        return delivery


@dataclass(eq=False)
class HaltedDeadLetter:
    """A dead-letter publish that failed terminally and blocks a partition."""

    envelope: DeadLetterEnvelope
    delivery: Delivery
    error: str


@dataclass(eq=False)
class PartitionState:
    """Ordering state of one partition.

    ``pending`` is the processing queue; its head is the only message of the
    partition that may be in flight. ``uncommitted`` holds every received
    delivery in arrival order until it can be committed.
    """

    key: str
    pending: deque[Delivery] = field(default_factory=deque)
    uncommitted: deque[Delivery] = field(default_factory=deque)
    scheduled: bool = False
    halt_reason: str | None = None
    halted: list[HaltedDeadLetter] = field(default_factory=list)
    retry_handle: asyncio.TimerHandle | None = None
    commit_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_halted(self) -> bool:
        return self.halt_reason is not None

    @property
    def is_idle(self) -> bool:
        return (
            not self.pending
            and not self.uncommitted
            and not self.scheduled
            and not self.is_halted
        )

    def take_committable(self) -> Delivery | None:
        """Pop the contiguous prefix of done deliveries; return the last one."""
        last = None
        while self.uncommitted and self.uncommitted[0].done:
            last = self.uncommitted.popleft()
        return last
