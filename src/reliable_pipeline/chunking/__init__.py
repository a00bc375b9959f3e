"""Chunked-payload reassembly (claim-check fragment variant)."""

from __future__ import annotations

from .assembler import ChunkAssembler
from .models import (
    AssemblyResult,
    AssemblySnapshot,
    AssemblyStatus,
    ChunkFragment,
    EvictedAssembly,
    PartialAssembly,
    checksum_of,
)
from .splitter import (
    fragment_headers,
    is_fragment,
    parse_fragment,
    split_payload,
    strip_chunk_headers,
)

__all__ = [
    "AssemblyResult",
    "AssemblySnapshot",
    "AssemblyStatus",
    "ChunkAssembler",
    "ChunkFragment",
    "EvictedAssembly",
    "PartialAssembly",
    "checksum_of",
    "fragment_headers",
    "is_fragment",
    "parse_fragment",
    "split_payload",
    "strip_chunk_headers",
]
