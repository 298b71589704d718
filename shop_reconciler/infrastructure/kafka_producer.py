import json
from typing import Any

from aiokafka import AIOKafkaProducer

from shop_reconciler.core.models import OutboxEvent


class OrderEventPublisher:
    """Publishes order lifecycle events; the order id is the partition key."""

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
    ):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: AIOKafkaProducer | None = None

    async def start(self):
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            enable_idempotence=True,
        )
        await self._producer.start()

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, event: OutboxEvent) -> None:
        if not self._producer:
            raise RuntimeError("Publisher is not started. Call start() first.")

        message: dict[str, Any] = {
            "event_id": event.id,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }
        await self._producer.send_and_wait(
            topic=self._topic,
            value=message,
            key=event.payload.get("order_id") or event.id,
            headers=[
                ("event-id", event.id.encode("utf-8")),
                ("event-type", str(event.event_type).encode("utf-8")),
            ],
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
