"""Kafka event publishing on top of aiokafka.

EventPublisher owns one AIOKafkaProducer for the process. Domain-specific
publishers (adapters/kafka.py) wrap it and build the event envelope.
Publishing is best effort: a broker failure is logged and never breaks the
request that triggered the event.
"""

import json
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from complianceos.common.observability import get_logger

logger = get_logger(__name__)


class EventPublisher:
    """Thin lifecycle wrapper around AIOKafkaProducer.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap servers.
        enabled: When False, events are only logged.
    """

    def __init__(self, bootstrap_servers: str, enabled: bool = True) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._enabled = enabled
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        """Create and start the producer."""
        if not self._enabled:
            logger.info("Kafka publishing disabled")
            return
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda value: json.dumps(value, default=str).encode("utf-8"),
            key_serializer=lambda key: key.encode("utf-8") if key is not None else None,
            acks="all",
        )
        await self._producer.start()

    async def stop(self) -> None:
        """Flush buffered messages and stop the producer."""
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        """Send one message and wait for the broker acknowledgement.

        Args:
            topic: Target topic.
            value: JSON-serializable payload.
            key: Optional partition key (tenant id by convention).
        """
        if self._producer is None:
            logger.debug("Event not published (producer not started)", topic=topic, event_type=value.get("event_type"))
            return
        try:
            await self._producer.send_and_wait(topic, value=value, key=key)
        except KafkaError as exc:
            logger.warning("Event publish failed", topic=topic, event_type=value.get("event_type"), error=str(exc))
