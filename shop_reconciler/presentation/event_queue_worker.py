import asyncio
import logging

from shop_reconciler.application.apply_provider_event import DrainProviderEventsUseCase

logger = logging.getLogger(__name__)


class EventQueueWorker:
    """Drains provider events that were stored but not applied inline."""

    def __init__(
        self,
        use_case: DrainProviderEventsUseCase,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        batch_size: int = 50,
    ):
        self._use_case = use_case
        self._worker_id = worker_id
        self._poll_interval_seconds = float(poll_interval_seconds)
        self._batch_size = batch_size

    async def run_once(self) -> int:
        try:
            result = await self._use_case(self._worker_id, self._batch_size)
        except Exception:
            logger.exception("Provider event drain failed")
            return 0
        if result.processed:
            logger.info(
                "Drained %s provider events: %s", result.processed, result.results
            )
        return result.processed

    async def run(self):
        while True:
            processed = await self.run_once()
            if processed < self._batch_size:
                await asyncio.sleep(self._poll_interval_seconds)
