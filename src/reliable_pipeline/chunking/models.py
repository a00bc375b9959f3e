"""Chunk fragment and assembly models."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


def checksum_of(data: bytes) -> str:
    """SHA-256 hex digest used for slice and whole-message checksums."""
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ChunkFragment:
    """One ordered slice of a logical message split by the producer."""

    logical_message_id: str
    chunk_index: int
    total_chunks: int
    payload_slice: bytes
    checksum: str
    message_checksum: str | None = None

    def verify(self) -> bool:
        """Return True if ``checksum`` matches ``payload_slice``."""
        return checksum_of(self.payload_slice) == self.checksum


@dataclass
class PartialAssembly:
    """In-memory aggregate of fragments received so far for one logical id."""

    logical_message_id: str
    total_chunks: int
    created_at: datetime
    received_chunks: dict[int, bytes] = field(default_factory=dict)
    checksums: dict[int, str] = field(default_factory=dict)
    message_checksum: str | None = None

    @property
    def is_complete(self) -> bool:
        return len(self.received_chunks) == self.total_chunks

    def assemble(self) -> bytes:
        """Concatenate slices strictly in chunk-index order."""
        return b"".join(self.received_chunks[i] for i in range(self.total_chunks))


class AssemblyStatus(str, enum.Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class AssemblyResult:
    """Outcome of ingesting one fragment.

    ``payload`` is set only for ``COMPLETE``; ``detail`` explains failures.
    """

    status: AssemblyStatus
    logical_message_id: str
    payload: bytes | None = None
    detail: str = ""
    received: int = 0
    total: int = 0

    @property
    def is_terminal_failure(self) -> bool:
        return self.status in (
            AssemblyStatus.CHECKSUM_MISMATCH,
            AssemblyStatus.MALFORMED,
        )


@dataclass(frozen=True)
class EvictedAssembly:
    """A partial assembly removed by the age sweep."""

    logical_message_id: str
    received: int
    total: int
    age_seconds: float


class AssemblySnapshot(BaseModel):
    """Serializable form of a :class:`PartialAssembly`."""

    model_config = ConfigDict(
        frozen=True, ser_json_bytes="base64", val_json_bytes="base64"
    )

    logical_message_id: str
    total_chunks: int
    created_at: datetime
    received_chunks: dict[int, bytes] = Field(default_factory=dict)
    message_checksum: str | None = None
