"""ISnapshotStore — persist in-memory pipeline state across restarts."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from ..chunking.models import AssemblySnapshot
from ..models import RetryState


class PipelineSnapshot(BaseModel):
    """Partial assemblies and retry states captured at shutdown.

    ``retry_states`` is keyed by ``topic:partition_key:sequence_token``.
    """

    model_config = ConfigDict(frozen=True)

    assemblies: list[AssemblySnapshot] = Field(default_factory=list)
    retry_states: dict[str, RetryState] = Field(default_factory=dict)


@runtime_checkable
class ISnapshotStore(Protocol):
    async def save(self, snapshot: PipelineSnapshot) -> None:
        """Persist *snapshot*, replacing any previous one."""
        ...

    async def load(self) -> PipelineSnapshot | None:
        """Return the last saved snapshot and forget it, or None."""
        ...
