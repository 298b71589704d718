import asyncio
import logging

from shop_reconciler.application.process_outbox_events import ProcessOutboxEventsUseCase

logger = logging.getLogger(__name__)


class OutboxWorker:
    def __init__(
        self,
        use_case: ProcessOutboxEventsUseCase,
        poll_interval_seconds: float = 1.0,
    ):
        self._use_case = use_case
        self._poll_interval_seconds = float(poll_interval_seconds)

    async def run_once(self) -> int:
        try:
            return await self._use_case()
        except Exception:
            logger.exception("Outbox relay iteration failed")
            return 0

    async def run(self):
        while True:
            sent = await self.run_once()
            if not sent:
                await asyncio.sleep(self._poll_interval_seconds)
