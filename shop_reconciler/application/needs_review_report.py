import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from shop_reconciler.application.sweep_stale_orders import clamp
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

MIN_AGE_HOURS = 0
MAX_AGE_HOURS = 168
DEFAULT_AGE_HOURS = 24
MIN_REPORT_LIMIT = 1
MAX_REPORT_LIMIT = 500
DEFAULT_REPORT_LIMIT = 100
TOP_REASONS = 3


class ReasonCount(BaseModel):
    reason: str
    count: int


class NeedsReviewReport(BaseModel):
    count: int
    oldest_age_minutes: int | None
    top_reasons: list[ReasonCount]
    age_hours: int
    limit: int


def top_reasons(codes: list[str | None], size: int = TOP_REASONS) -> list[ReasonCount]:
    counter = Counter(code.strip() for code in codes if code and code.strip())
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [ReasonCount(reason=reason, count=count) for reason, count in ranked[:size]]


class NeedsReviewReportUseCase:
    """Read-only aging report over orders parked in ``needs_review``."""

    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    async def __call__(
        self, age_hours: int | None = None, limit: int | None = None
    ) -> NeedsReviewReport:
        age_hours = clamp(age_hours, MIN_AGE_HOURS, MAX_AGE_HOURS, DEFAULT_AGE_HOURS)
        limit = clamp(limit, MIN_REPORT_LIMIT, MAX_REPORT_LIMIT, DEFAULT_REPORT_LIMIT)

        async with self._unit_of_work() as uow:
            orders = await uow.orders.list_needs_review(
                older_than=timedelta(hours=age_hours), limit=limit
            )

        oldest_age_minutes = None
        if orders:
            age = datetime.now(timezone.utc) - orders[0].updated_at
            oldest_age_minutes = max(0, int(age.total_seconds() // 60))

        report = NeedsReviewReport(
            count=len(orders),
            oldest_age_minutes=oldest_age_minutes,
            top_reasons=top_reasons([order.failure_code for order in orders]),
            age_hours=age_hours,
            limit=limit,
        )
        log_event(
            logger,
            logging.WARNING if report.count else logging.INFO,
            "needs_review_report",
            count=report.count,
            oldest_age_minutes=report.oldest_age_minutes,
            age_hours=age_hours,
            limit=limit,
        )
        return report
