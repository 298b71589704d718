import logging

from aiokafka.errors import KafkaError

from shop_reconciler.infrastructure.kafka_producer import OrderEventPublisher
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        publisher: OrderEventPublisher,
        batch_size: int = 100,
    ):
        self._unit_of_work = unit_of_work
        self._publisher = publisher
        self._batch_size = batch_size

    async def __call__(self) -> int:
        """
        Publish pending outbox events and mark them as sent.
        Each event gets its own unit of work, so at most one outbox row is
        locked while Kafka is sending. Returns the number of events published.
        """
        async with self._unit_of_work() as uow:
            events = await uow.outbox.get_pending_events(limit=self._batch_size)

        if not events:
            return 0

        sent = 0
        async with self._publisher as publisher:
            for event in events:
                async with self._unit_of_work() as uow:
                    # Another relay may have sent it since the batch was read.
                    if await uow.outbox.lock_pending_event(event.id) is None:
                        continue
                    try:
                        await publisher.publish(event)
                    except KafkaError as e:
                        # Left pending; the next run retries it.
                        log_event(
                            logger,
                            logging.WARNING,
                            "outbox_publish_failed",
                            event_id=event.id,
                            event_type=event.event_type,
                            error=str(e),
                        )
                        continue

                    await uow.outbox.mark_as_sent(event.id)
                    await uow.commit()
                    sent += 1
        return sent
