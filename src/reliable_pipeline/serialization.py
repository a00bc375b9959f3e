"""EnvelopeSerializer — JSON roundtrip for dead-letter envelopes and snapshots."""

from __future__ import annotations

from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .exceptions import SerializationError
from .models import DeadLetterEnvelope
from .ports.snapshot import PipelineSnapshot

_M = TypeVar("_M", bound=BaseModel)


class EnvelopeSerializer:
    """Serialize/deserialize pipeline records to/from UTF-8 JSON bytes.

    Payload bytes are base64-encoded by the models themselves.
    """

    def serialize(self, record: BaseModel) -> bytes:
        """Encode *record* to JSON bytes."""
        try:
            return record.model_dump_json().encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(str(e)) from e

    def _load(self, raw: bytes | str, model: type[_M]) -> _M:
        try:
            return model.model_validate_json(raw)
        except (PydanticValidationError, UnicodeDecodeError) as e:
            raise SerializationError(str(e)) from e

    def deserialize(self, raw: bytes | str) -> DeadLetterEnvelope:
        """Decode JSON bytes to a :class:`DeadLetterEnvelope`."""
        return self._load(raw, DeadLetterEnvelope)

    def deserialize_snapshot(self, raw: bytes | str) -> PipelineSnapshot:
        """Decode JSON bytes to a :class:`PipelineSnapshot`."""
        return self._load(raw, PipelineSnapshot)
