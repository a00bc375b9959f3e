"""Kafka bootstrap configuration and cluster checks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiokafka.admin import AIOKafkaAdminClient
from aiokafka.errors import KafkaError

from ..exceptions import TransportError

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("reliable_pipeline.kafka")

_CONSUMER_ONLY = frozenset(
    {"group_id", "auto_offset_reset", "isolation_level", "max_poll_records"}
)


class KafkaConnectionManager:
    """Bootstrap servers plus aiokafka client kwargs shared by every client.

    Consumer-only options (``group_id``, ``auto_offset_reset``, ...) only
    reach the consumer; producer and admin clients get the rest.
    """

    def __init__(
        self,
        bootstrap_servers: str | list[str] = "localhost:9092",
        **config: Any,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._config = config

    @property
    def bootstrap_servers(self) -> str | list[str]:
        return self._bootstrap_servers

    def producer_config(self) -> dict[str, Any]:
        options = {k: v for k, v in self._config.items() if k not in _CONSUMER_ONLY}
        options["bootstrap_servers"] = self._bootstrap_servers
        return options

    def consumer_config(self) -> dict[str, Any]:
        return {**self._config, "bootstrap_servers": self._bootstrap_servers}

    async def list_topics(self) -> set[str]:
        """Topic names known to the cluster.

        Raises:
            TransportError: The cluster could not be reached.
        """
        admin = AIOKafkaAdminClient(**self.producer_config())
        try:
            await admin.start()
            try:
                return set(await admin.list_topics())
            finally:
                await admin.close()
        except KafkaError as e:
            raise TransportError(f"Kafka admin request failed: {e}") from e

    async def health_check(self, topics: Iterable[str] = ()) -> bool:
        """True if the cluster answers and every topic in *topics* exists."""
        try:
            existing = await self.list_topics()
        except TransportError as e:
            logger.warning("Kafka health check failed: %s", e)
            return False
        missing = sorted(set(topics) - existing)
        if missing:
            logger.warning("Kafka health check: missing topics %s", ", ".join(missing))
            return False
        return True
