"""Producer-side splitting and the fragment header contract.

A message is a fragment when it carries the ``chunk-message-id`` header; the
companion headers describe its position and checksum::

    chunk-message-id        logical message id shared by all fragments
    chunk-index             0-based position
    chunk-total             number of fragments
    chunk-checksum          SHA-256 hex of this fragment's payload
    chunk-message-checksum  optional SHA-256 hex of the whole payload
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from ..exceptions import MalformedChunkingError
from .models import ChunkFragment, checksum_of

if TYPE_CHECKING:
    from ..models import Message

MESSAGE_ID_HEADER = "chunk-message-id"
INDEX_HEADER = "chunk-index"
TOTAL_HEADER = "chunk-total"
CHECKSUM_HEADER = "chunk-checksum"
MESSAGE_CHECKSUM_HEADER = "chunk-message-checksum"

CHUNK_HEADERS = frozenset(
    {
        MESSAGE_ID_HEADER,
        INDEX_HEADER,
        TOTAL_HEADER,
        CHECKSUM_HEADER,
        MESSAGE_CHECKSUM_HEADER,
    }
)


def split_payload(
    payload: bytes,
    chunk_size: int,
    *,
    logical_message_id: str | None = None,
    include_message_checksum: bool = True,
) -> list[ChunkFragment]:
    """Split *payload* into ordered fragments of at most *chunk_size* bytes.

    An empty payload still yields one (empty) fragment so the consumer sees a
    complete logical message.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    logical_id = logical_message_id or str(uuid.uuid4())
    total = max(1, -(-len(payload) // chunk_size))
    whole = checksum_of(payload) if include_message_checksum else None
    fragments = []
    for index in range(total):
        part = payload[index * chunk_size : (index + 1) * chunk_size]
        fragments.append(
            ChunkFragment(
                logical_message_id=logical_id,
                chunk_index=index,
                total_chunks=total,
                payload_slice=part,
                checksum=checksum_of(part),
                message_checksum=whole,
            )
        )
    return fragments


def fragment_headers(fragment: ChunkFragment) -> dict[str, str]:
    """Headers a producer attaches to the message carrying *fragment*."""
    headers = {
        MESSAGE_ID_HEADER: fragment.logical_message_id,
        INDEX_HEADER: str(fragment.chunk_index),
        TOTAL_HEADER: str(fragment.total_chunks),
        CHECKSUM_HEADER: fragment.checksum,
    }
    if fragment.message_checksum:
        headers[MESSAGE_CHECKSUM_HEADER] = fragment.message_checksum
    return headers


def is_fragment(message: Message) -> bool:
    return MESSAGE_ID_HEADER in message.headers


def parse_fragment(message: Message) -> ChunkFragment:
    """Rebuild the :class:`ChunkFragment` carried by *message*.

    Raises:
        MalformedChunkingError: A companion header is missing or invalid.
    """
    headers = message.headers
    logical_id = headers.get(MESSAGE_ID_HEADER, "")
    if not logical_id:
        raise MalformedChunkingError("Fragment has an empty chunk-message-id")
    try:
        index = int(headers[INDEX_HEADER])
        total = int(headers[TOTAL_HEADER])
        checksum = headers[CHECKSUM_HEADER]
    except KeyError as e:
        raise MalformedChunkingError(
            f"Fragment is missing header {e.args[0]!r}", logical_id
        ) from e
    except ValueError as e:
        raise MalformedChunkingError(
            f"Fragment has a non-integer position header: {e}", logical_id
        ) from e
    if total < 1 or not 0 <= index < total:
        raise MalformedChunkingError(
            f"Fragment index {index} out of range for total {total}", logical_id
        )
    return ChunkFragment(
        logical_message_id=logical_id,
        chunk_index=index,
        total_chunks=total,
        payload_slice=message.payload,
        checksum=checksum,
        message_checksum=headers.get(MESSAGE_CHECKSUM_HEADER),
    )


def strip_chunk_headers(headers: dict[str, str]) -> dict[str, str]:
    """Return *headers* without the fragment contract headers."""
    return {k: v for k, v in headers.items() if k not in CHUNK_HEADERS}
