"""In-memory snapshot store (survives pipeline restarts within one process)."""

from __future__ import annotations

from ..ports.snapshot import ISnapshotStore, PipelineSnapshot


class InMemorySnapshotStore(ISnapshotStore):
    def __init__(self) -> None:
        self._snapshot: PipelineSnapshot | None = None

    async def save(self, snapshot: PipelineSnapshot) -> None:
        self._snapshot = snapshot

    async def load(self) -> PipelineSnapshot | None:
        snapshot, self._snapshot = self._snapshot, None
        return snapshot

    @property
    def snapshot(self) -> PipelineSnapshot | None:
        return self._snapshot
