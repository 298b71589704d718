from dependency_injector import containers, providers

from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.presentation.event_queue_worker import EventQueueWorker
from shop_reconciler.presentation.outbox_worker import OutboxWorker


class PresentationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    application = providers.Container[ApplicationContainer](
        ApplicationContainer, config=config
    )

    outbox_worker = providers.Singleton[OutboxWorker](
        OutboxWorker,
        use_case=application.process_outbox_events_use_case,
        poll_interval_seconds=config.workers.outbox_poll_interval_seconds,
    )
    event_queue_worker = providers.Singleton[EventQueueWorker](
        EventQueueWorker,
        use_case=application.drain_provider_events_use_case,
        worker_id=config.workers.worker_id,
        poll_interval_seconds=config.workers.event_poll_interval_seconds,
    )
