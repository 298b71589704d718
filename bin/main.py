import asyncio
import logging
from pathlib import Path

import uvicorn

from shop_reconciler.presentation.app import build_api
from shop_reconciler.presentation.container import PresentationContainer
from shop_reconciler.presentation.event_queue_worker import EventQueueWorker
from shop_reconciler.presentation.outbox_worker import OutboxWorker

CONFIG_PATH = Path(__file__).resolve().parent.parent / "shop_reconciler" / "config.yaml"


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    presentation_container = PresentationContainer()
    presentation_container.config.from_yaml(CONFIG_PATH, required=True)

    app = build_api(presentation_container.application)

    outbox_worker: OutboxWorker = presentation_container.outbox_worker()
    event_queue_worker: EventQueueWorker = presentation_container.event_queue_worker()

    api_task = asyncio.create_task(
        uvicorn.Server(
            uvicorn.Config(app, host="0.0.0.0", port=8000, log_level="info")
        ).serve()
    )

    outbox_task = asyncio.create_task(outbox_worker.run())

    event_queue_task = asyncio.create_task(event_queue_worker.run())

    await asyncio.gather(api_task, outbox_task, event_queue_task)


if __name__ == "__main__":
    asyncio.run(main())
