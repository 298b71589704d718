import logging
import uuid
from datetime import timedelta

from shop_reconciler.core.errors import RateLimitedError
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class JanitorJobGate:
    """Enforce a minimum interval between runs of the same janitor job.

    The slot is taken with a single conditional upsert, so of two overlapping
    callers only one gets through.
    """

    def __init__(self, unit_of_work: UnitOfWork, min_interval_seconds: int = 60):
        self._unit_of_work = unit_of_work
        self._min_interval = timedelta(seconds=max(0, int(min_interval_seconds)))

    async def acquire(self, job_name: str) -> str:
        run_id = str(uuid.uuid4())
        async with self._unit_of_work() as uow:
            acquired = await uow.job_state.acquire_slot(
                job_name, run_id, self._min_interval
            )
            if not acquired:
                retry_after = max(1, await uow.job_state.seconds_until_allowed(job_name))
            await uow.commit()

        if not acquired:
            log_event(
                logger,
                logging.INFO,
                "janitor_job_rate_limited",
                job=job_name,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                "Janitor job ran too recently", retry_after=retry_after, job=job_name
            )
        return run_id
