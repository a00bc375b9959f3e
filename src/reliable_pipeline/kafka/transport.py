"""KafkaTransport — ITransport over aiokafka with manual offset commits."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from ..exceptions import TransportError
from ..models import Message, utcnow
from ..ports.transport import ITransport

if TYPE_CHECKING:
    from ..models import DeadLetterEnvelope
    from .connection import KafkaConnectionManager

logger = logging.getLogger("reliable_pipeline.kafka")


def record_to_message(record: Any) -> Message:
    """Convert an aiokafka ``ConsumerRecord`` to a :class:`Message`.

    The partition key is ``<topic>-<partition>``: ordering is per Kafka
    partition and the offset is the sequence token.
    """
    headers = {
        name: value.decode("utf-8", errors="replace") if value is not None else ""
        for name, value in (record.headers or ())
    }
    if record.timestamp is not None and record.timestamp >= 0:
        delivered = datetime.fromtimestamp(record.timestamp / 1000, tz=timezone.utc)
    else:
        delivered = utcnow()
    key = record.key.decode("utf-8", errors="replace") if record.key else None
    return Message(
        topic=record.topic,
        partition_key=f"{record.topic}-{record.partition}",
        sequence_token=record.offset,
        payload=record.value or b"",
        headers=headers,
        delivery_timestamp=delivered,
        key=key,
        partition=record.partition,
    )


class KafkaTransport(ITransport):
    """Kafka adapter implementing ITransport.

    Uses a consumer group with ``enable_auto_commit=False``; ``commit``
    stores ``offset + 1`` for the message's topic-partition. Dead letters are
    produced to the destination topic with the original key, the original
    payload and the envelope headers.
    """

    def __init__(
        self,
        connection: KafkaConnectionManager,
        topics: list[str],
        *,
        group_id: str = "reliable-pipeline",
    ) -> None:
        """Configure the transport.

        Args:
            connection: Shared connection config.
            topics: Topics to consume.
            group_id: Kafka consumer group id.
        """
        if not topics:
            raise ValueError("At least one topic is required")
        self._connection = connection
        self._topics = list(topics)
        self._group_id = group_id
        self._consumer: AIOKafkaConsumer | None = None
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        if self._consumer is not None:
            return
        config = self._connection.consumer_config()
        config.pop("group_id", None)
        consumer = AIOKafkaConsumer(
            *self._topics,
            group_id=self._group_id,
            enable_auto_commit=False,
            **config,
        )
        await consumer.start()
        self._consumer = consumer
        logger.info("Kafka consumer started for %s", ", ".join(self._topics))

    async def stop(self) -> None:
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def _get_producer(self) -> AIOKafkaProducer:
        """Create or return the dead-letter producer."""
        if self._producer is not None:
            return self._producer
        producer = AIOKafkaProducer(**self._connection.producer_config())
        await producer.start()
        self._producer = producer
        return producer

    def _require_consumer(self) -> AIOKafkaConsumer:
        if self._consumer is None:
            raise TransportError("KafkaTransport is not started")
        return self._consumer

    async def fetch(self, max_records: int, timeout: float) -> list[Message]:
        consumer = self._require_consumer()
        try:
            batches = await consumer.getmany(
                timeout_ms=int(timeout * 1000), max_records=max_records
            )
        except KafkaError as e:
            raise TransportError(f"Kafka fetch failed: {e}") from e
        return [
            record_to_message(record)
            for records in batches.values()
            for record in records
        ]

    async def commit(self, message: Message) -> None:
        if message.partition is None:
            raise TransportError(f"{message.coordinates} has no Kafka partition")
        consumer = self._require_consumer()
        tp = TopicPartition(message.topic, message.partition)
        try:
            await consumer.commit({tp: message.sequence_token + 1})
        except KafkaError as e:
            raise TransportError(
                f"Commit of {message.coordinates} failed: {e}"
            ) from e

    async def republish(self, destination: str, envelope: DeadLetterEnvelope) -> None:
        producer = await self._get_producer()
        try:
            await producer.send_and_wait(
                destination,
                value=envelope.original_message.payload,
                key=envelope.key.encode("utf-8"),
                headers=[(k, v.encode("utf-8")) for k, v in envelope.headers.items()],
            )
        except KafkaError as e:
            raise TransportError(f"Publish to {destination} failed: {e}") from e

    async def health_check(self) -> bool:
        """True if the cluster is reachable and the consumed topics exist."""
        return await self._connection.health_check(self._topics)
