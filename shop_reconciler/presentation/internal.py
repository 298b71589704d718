from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from shop_reconciler.application.apply_provider_event import (
    DrainProviderEventsUseCase,
    DrainResult,
)
from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.application.janitor_gate import JanitorJobGate
from shop_reconciler.application.needs_review_report import (
    NeedsReviewReport,
    NeedsReviewReportUseCase,
)
from shop_reconciler.application.replay_stored_events import (
    DEFAULT_REPLAY_EVENTS,
    ReplayResult,
    ReplayStoredEventsUseCase,
)
from shop_reconciler.application.sweep_stale_orders import (
    RestockStalePendingOrdersUseCase,
    SweepOptions,
    SweepResult,
)
from shop_reconciler.core.errors import InvalidPayloadError
from shop_reconciler.core.models import PaymentProvider
from shop_reconciler.presentation.guards import guard_non_browser, require_janitor_secret

MAX_DRAIN_EVENTS = 500

router = APIRouter(
    prefix="/internal",
    dependencies=[Depends(guard_non_browser), Depends(require_janitor_secret)],
)


async def _read_options(request: Request) -> SweepOptions:
    # The body is read only after both guards passed.
    body = await request.body()
    if not body.strip():
        return SweepOptions()
    try:
        return SweepOptions.model_validate_json(body)
    except ValidationError:
        raise InvalidPayloadError("Invalid sweep options") from None


@router.post("/orders/restock-stale", response_model=SweepResult)
@inject
async def restock_stale_orders(
    request: Request,
    janitor_job_gate: JanitorJobGate = Depends(
        Provide[ApplicationContainer.janitor_job_gate]
    ),
    restock_stale_orders_use_case: RestockStalePendingOrdersUseCase = Depends(
        Provide[ApplicationContainer.restock_stale_orders_use_case]
    ),
):
    options = await _read_options(request)
    await janitor_job_gate.acquire("restock-stale")
    return await restock_stale_orders_use_case(options)


@router.post("/events/drain", response_model=DrainResult)
@inject
async def drain_events(
    max_events: int = 100,
    janitor_job_gate: JanitorJobGate = Depends(
        Provide[ApplicationContainer.janitor_job_gate]
    ),
    drain_provider_events_use_case: DrainProviderEventsUseCase = Depends(
        Provide[ApplicationContainer.drain_provider_events_use_case]
    ),
):
    max_events = max(1, min(MAX_DRAIN_EVENTS, max_events))
    await janitor_job_gate.acquire("events-drain")
    return await drain_provider_events_use_case("janitor-drain", max_events)


@router.post("/events/replay-stored", response_model=ReplayResult)
@inject
async def replay_stored_events(
    provider: PaymentProvider = PaymentProvider.MONOBANK,
    limit: int = DEFAULT_REPLAY_EVENTS,
    dry_run: bool = False,
    janitor_job_gate: JanitorJobGate = Depends(
        Provide[ApplicationContainer.janitor_job_gate]
    ),
    replay_stored_events_use_case: ReplayStoredEventsUseCase = Depends(
        Provide[ApplicationContainer.replay_stored_events_use_case]
    ),
):
    if provider == PaymentProvider.NONE:
        raise InvalidPayloadError("Provider has no webhook events", provider=str(provider))
    await janitor_job_gate.acquire(f"events-replay-stored:{provider}")
    return await replay_stored_events_use_case(provider, limit, dry_run)


@router.get("/orders/needs-review", response_model=NeedsReviewReport)
@inject
async def needs_review_report(
    age_hours: int | None = None,
    limit: int | None = None,
    janitor_job_gate: JanitorJobGate = Depends(
        Provide[ApplicationContainer.janitor_job_gate]
    ),
    needs_review_report_use_case: NeedsReviewReportUseCase = Depends(
        Provide[ApplicationContainer.needs_review_report_use_case]
    ),
):
    await janitor_job_gate.acquire("needs-review-report")
    return await needs_review_report_use_case(age_hours, limit)
