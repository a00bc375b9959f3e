"""Kafka transport adapter (aiokafka)."""

from __future__ import annotations

from .connection import KafkaConnectionManager
from .transport import KafkaTransport, record_to_message

__all__ = ["KafkaConnectionManager", "KafkaTransport", "record_to_message"]
