"""ChunkAssembler — reconstruct logical messages from ordered fragments."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from ..models import utcnow
from .models import (
    AssemblyResult,
    AssemblySnapshot,
    AssemblyStatus,
    ChunkFragment,
    EvictedAssembly,
    PartialAssembly,
    checksum_of,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from datetime import datetime

logger = logging.getLogger("reliable_pipeline.chunking")


class ChunkAssembler:
    """Collects fragments per logical message id until all have arrived.

    Fragment checksums are verified on arrival, so a corrupted fragment never
    occupies memory. Ingestion is serialized per logical id; different ids
    proceed independently. Assemblies older than ``max_assembly_age`` are
    removed by :meth:`sweep_expired` and reported to the caller as terminal.
    """

    def __init__(
        self,
        *,
        max_assembly_age: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_assembly_age <= timedelta(0):
            raise ValueError("max_assembly_age must be positive")
        self._max_age = max_assembly_age
        self._clock = clock
        self._assemblies: dict[str, PartialAssembly] = {}
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._assemblies)

    def __contains__(self, logical_message_id: object) -> bool:
        return logical_message_id in self._assemblies

    @contextlib.asynccontextmanager
    async def _serialized(self, logical_message_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(logical_message_id, (asyncio.Lock(), 0))
        self._locks[logical_message_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[logical_message_id]
            if users <= 1:
                del self._locks[logical_message_id]
            else:
                self._locks[logical_message_id] = (lock, users - 1)

    async def ingest(self, fragment: ChunkFragment) -> AssemblyResult:
        """Add *fragment* to its assembly and report the outcome."""
        async with self._serialized(fragment.logical_message_id):
            return self._ingest(fragment)

    def _ingest(self, fragment: ChunkFragment) -> AssemblyResult:
        logical_id = fragment.logical_message_id
        if not 0 <= fragment.chunk_index < fragment.total_chunks:
            return AssemblyResult(
                AssemblyStatus.MALFORMED,
                logical_id,
                detail=(
                    f"chunk index {fragment.chunk_index} out of range "
                    f"for total {fragment.total_chunks}"
                ),
            )

        assembly = self._assemblies.get(logical_id)
        if assembly is not None and assembly.total_chunks != fragment.total_chunks:
            logger.warning(
                "Fragment of %s declares %d chunks, assembly expects %d",
                logical_id,
                fragment.total_chunks,
                assembly.total_chunks,
            )
            return AssemblyResult(
                AssemblyStatus.MALFORMED,
                logical_id,
                detail=(
                    f"total_chunks {fragment.total_chunks} does not match "
                    f"{assembly.total_chunks} of earlier fragments"
                ),
            )

        if not fragment.verify():
            logger.warning(
                "Checksum mismatch for chunk %d of %s",
                fragment.chunk_index,
                logical_id,
            )
            return AssemblyResult(
                AssemblyStatus.CHECKSUM_MISMATCH,
                logical_id,
                detail=f"checksum mismatch on chunk {fragment.chunk_index}",
            )

        if assembly is None:
            assembly = PartialAssembly(
                logical_message_id=logical_id,
                total_chunks=fragment.total_chunks,
                created_at=self._clock(),
            )
            self._assemblies[logical_id] = assembly

        index = fragment.chunk_index
        if index in assembly.received_chunks:
            if assembly.checksums[index] != fragment.checksum:
                return AssemblyResult(
                    AssemblyStatus.MALFORMED,
                    logical_id,
                    detail=f"chunk {index} redelivered with different content",
                )
            logger.debug("Duplicate chunk %d of %s absorbed", index, logical_id)
        else:
            assembly.received_chunks[index] = fragment.payload_slice
            assembly.checksums[index] = fragment.checksum
        if fragment.message_checksum and not assembly.message_checksum:
            assembly.message_checksum = fragment.message_checksum

        if not assembly.is_complete:
            return AssemblyResult(
                AssemblyStatus.INCOMPLETE,
                logical_id,
                received=len(assembly.received_chunks),
                total=assembly.total_chunks,
            )

        del self._assemblies[logical_id]
        payload = assembly.assemble()
        if assembly.message_checksum and checksum_of(payload) != assembly.message_checksum:
            logger.warning("Whole-message checksum mismatch for %s", logical_id)
            return AssemblyResult(
                AssemblyStatus.CHECKSUM_MISMATCH,
                logical_id,
                detail="reassembled payload does not match message checksum",
                received=assembly.total_chunks,
                total=assembly.total_chunks,
            )
        return AssemblyResult(
            AssemblyStatus.COMPLETE,
            logical_id,
            payload=payload,
            received=assembly.total_chunks,
            total=assembly.total_chunks,
        )

    def discard(self, logical_message_id: str) -> bool:
        """Drop a partial assembly; return True if one existed."""
        return self._assemblies.pop(logical_message_id, None) is not None

    def clear(self) -> None:
        """Drop every partial assembly."""
        self._assemblies.clear()

    def sweep_expired(self) -> list[EvictedAssembly]:
        """Evict assemblies older than ``max_assembly_age``.

        Assemblies currently being ingested are left for the next sweep.
        """
        now = self._clock()
        evicted: list[EvictedAssembly] = []
        for logical_id, assembly in list(self._assemblies.items()):
            age = now - assembly.created_at
            if age < self._max_age or logical_id in self._locks:
                continue
            del self._assemblies[logical_id]
            evicted.append(
                EvictedAssembly(
                    logical_message_id=logical_id,
                    received=len(assembly.received_chunks),
                    total=assembly.total_chunks,
                    age_seconds=age.total_seconds(),
                )
            )
        if evicted:
            logger.info("Evicted %d stale partial assemblies", len(evicted))
        return evicted

    def snapshot(self) -> list[AssemblySnapshot]:
        return [
            AssemblySnapshot(
                logical_message_id=a.logical_message_id,
                total_chunks=a.total_chunks,
                created_at=a.created_at,
                received_chunks=dict(a.received_chunks),
                message_checksum=a.message_checksum,
            )
            for a in self._assemblies.values()
        ]

    def restore(self, snapshots: list[AssemblySnapshot]) -> None:
        """Reload assemblies saved by :meth:`snapshot` (existing ids win)."""
        for snap in snapshots:
            if snap.logical_message_id in self._assemblies:
                continue
            self._assemblies[snap.logical_message_id] = PartialAssembly(
                logical_message_id=snap.logical_message_id,
                total_chunks=snap.total_chunks,
                created_at=snap.created_at,
                received_chunks=dict(snap.received_chunks),
                checksums={
                    i: checksum_of(part) for i, part in snap.received_chunks.items()
                },
                message_checksum=snap.message_checksum,
            )
