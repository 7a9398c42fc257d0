import json
import logging
from typing import Any

from aiokafka import AIOKafkaProducer

logger = logging.getLogger(__name__)


class KafkaProducer:
    """Publishes fulfillment events to downstream consumers (notifications, analytics)."""

    def __init__(self, bootstrap_servers: str, topic: str):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: AIOKafkaProducer | None = None

    @property
    def is_started(self) -> bool:
        return self._producer is not None

    async def start(self):
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            enable_idempotence=True,
        )
        await producer.start()
        self._producer = producer
        logger.info(f"Kafka producer connected to {self._bootstrap_servers}")

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def send_message(
        self,
        message: dict[str, Any],
        key: str | None = None,
        event_type: str | None = None,
    ) -> None:
        if not self._producer:
            raise RuntimeError("Producer is not started. Call start() first.")

        headers = [("event_type", event_type.encode("utf-8"))] if event_type else None
        await self._producer.send_and_wait(
            topic=self._topic,
            value=message,
            key=key,
            headers=headers,
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
