import logging
import time
import uuid
from datetime import timedelta

from pydantic import BaseModel

from shop_reconciler.application.restock import (
    OUTBOX_EVENT_BY_REASON,
    order_event_payload,
    restock_order,
)
from shop_reconciler.core.errors import DomainError
from shop_reconciler.core.models import OrderStatus, RestockReason
from shop_reconciler.core.payment_state import OPEN_PAYMENT_STATUSES
from shop_reconciler.infrastructure.repositories import DoesNotExist, OutboxRepository
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

MIN_OLDER_THAN_MINUTES = 10
MAX_OLDER_THAN_MINUTES = 7 * 24 * 60
DEFAULT_OLDER_THAN_MINUTES = 60
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100
DEFAULT_BATCH_SIZE = 50
MIN_CLAIM_TTL_MINUTES = 1
MAX_CLAIM_TTL_MINUTES = 60
DEFAULT_CLAIM_TTL_MINUTES = 5
MAX_TIME_BUDGET_SECONDS = 25
DEFAULT_TIME_BUDGET_SECONDS = 20


def clamp(value: int | None, low: int, high: int, default: int) -> int:
    if value is None:
        return default
    return max(low, min(high, int(value)))


class SweepOptions(BaseModel):
    older_than_minutes: int | None = None
    batch_size: int | None = None
    claim_ttl_minutes: int | None = None
    time_budget_seconds: int | None = None


class SweepResult(BaseModel):
    run_id: str
    processed: int = 0
    orphaned: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0


class RestockStalePendingOrdersUseCase:
    """Release inventory held by orders that never got paid.

    Orders are claimed in batches with a time-leased claim, so overlapping
    sweeps split the work instead of processing the same order twice.
    """

    def __init__(self, unit_of_work: UnitOfWork, worker_id: str = "sweeper"):
        self._unit_of_work = unit_of_work
        self._worker_id = worker_id

    async def _claim_batch(
        self, run_id: str, older_than: timedelta, batch_size: int, claim_ttl: timedelta
    ) -> list[str]:
        async with self._unit_of_work() as uow:
            order_ids = await uow.orders.claim_stale_orders(
                older_than=older_than,
                batch_size=batch_size,
                claim_ttl=claim_ttl,
                run_id=run_id,
                claimed_by=self._worker_id,
            )
            await uow.commit()
            return order_ids

    async def _sweep_order(self, run_id: str, order_id: str) -> tuple[bool, bool]:
        """Return ``(restocked, orphan)`` for one claimed order."""
        async with self._unit_of_work() as uow:
            try:
                order = await uow.orders.get_by_id(order_id, for_update=True)
            except DoesNotExist:
                return False, False

            # A webhook may have settled the order since it was claimed.
            if (
                order.status != OrderStatus.CREATED
                or order.payment_status not in OPEN_PAYMENT_STATUSES
                or order.stock_restored
            ):
                return False, False

            outcome = await restock_order(uow, order.id, RestockReason.STALE)
            if not outcome.restocked:
                return False, False

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=OUTBOX_EVENT_BY_REASON[RestockReason.STALE],
                    payload=order_event_payload(
                        order.id,
                        "stale_sweep",
                        run_id=run_id,
                        orphan=outcome.orphan,
                    ),
                )
            )
            await uow.commit()
            return True, outcome.orphan

    async def __call__(self, options: SweepOptions | None = None) -> SweepResult:
        options = options or SweepOptions()
        older_than = timedelta(
            minutes=clamp(
                options.older_than_minutes,
                MIN_OLDER_THAN_MINUTES,
                MAX_OLDER_THAN_MINUTES,
                DEFAULT_OLDER_THAN_MINUTES,
            )
        )
        batch_size = clamp(
            options.batch_size, MIN_BATCH_SIZE, MAX_BATCH_SIZE, DEFAULT_BATCH_SIZE
        )
        claim_ttl = timedelta(
            minutes=clamp(
                options.claim_ttl_minutes,
                MIN_CLAIM_TTL_MINUTES,
                MAX_CLAIM_TTL_MINUTES,
                DEFAULT_CLAIM_TTL_MINUTES,
            )
        )
        time_budget = clamp(
            options.time_budget_seconds, 0, MAX_TIME_BUDGET_SECONDS, DEFAULT_TIME_BUDGET_SECONDS
        )

        result = SweepResult(run_id=str(uuid.uuid4()))
        deadline = time.monotonic() + time_budget
        while time.monotonic() < deadline:
            order_ids = await self._claim_batch(
                result.run_id, older_than, batch_size, claim_ttl
            )
            if not order_ids:
                break
            result.batches += 1

            for order_id in order_ids:
                try:
                    restocked, orphan = await self._sweep_order(result.run_id, order_id)
                except DomainError as e:
                    result.failed += 1
                    log_event(
                        logger,
                        logging.ERROR,
                        "stale_sweep_order_failed",
                        run_id=result.run_id,
                        order_id=order_id,
                        error_code=e.code,
                        error=e.message,
                    )
                    continue
                if restocked:
                    result.processed += 1
                    result.orphaned += int(orphan)
                else:
                    result.skipped += 1

        log_event(
            logger,
            logging.INFO,
            "stale_sweep_finished",
            **result.model_dump(),
            older_than_minutes=int(older_than.total_seconds() // 60),
            batch_size=batch_size,
        )
        return result
