import logging
import uuid
from datetime import timedelta

from pydantic import BaseModel

from shop_reconciler.application.apply_provider_event import ApplyProviderEventUseCase
from shop_reconciler.core.errors import WebhookModeNotStoreError
from shop_reconciler.core.models import AppliedResult, PaymentProvider, WebhookMode
from shop_reconciler.infrastructure.event_queue import DEFAULT_CLAIM_TTL
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

MAX_REPLAY_EVENTS = 500
DEFAULT_REPLAY_EVENTS = 100

_APPLIED_RESULTS = frozenset({AppliedResult.APPLIED, AppliedResult.APPLIED_WITH_ISSUE})


class ReplayResult(BaseModel):
    run_id: str
    dry_run: bool = False
    processed: int = 0
    applied: int = 0
    noop: int = 0
    failed: int = 0


class ReplayStoredEventsUseCase:
    """Apply events that were parked while a provider's webhook mode was ``store``.

    Replay is only allowed while the mode is still ``store``.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        apply_use_case: ApplyProviderEventUseCase,
        claim_ttl_seconds: int = int(DEFAULT_CLAIM_TTL.total_seconds()),
    ):
        self._unit_of_work = unit_of_work
        self._apply_use_case = apply_use_case
        self._claim_ttl = timedelta(seconds=int(claim_ttl_seconds))

    async def __call__(
        self,
        provider: PaymentProvider,
        limit: int = DEFAULT_REPLAY_EVENTS,
        dry_run: bool = False,
    ) -> ReplayResult:
        if self._apply_use_case.mode_for(provider) != WebhookMode.STORE:
            raise WebhookModeNotStoreError(provider=str(provider))

        limit = max(1, min(MAX_REPLAY_EVENTS, int(limit)))
        result = ReplayResult(run_id=str(uuid.uuid4()), dry_run=dry_run)
        if dry_run:
            async with self._unit_of_work() as uow:
                result.processed = min(
                    limit, await uow.provider_events.count_stored(provider)
                )
            log_event(
                logger,
                logging.INFO,
                "stored_events_replay_dry_run",
                provider=provider,
                **result.model_dump(),
            )
            return result

        worker_id = f"replay:{result.run_id}"
        while result.processed < limit:
            async with self._unit_of_work() as uow:
                event = await uow.provider_events.claim_next_stored_event(
                    provider, worker_id, self._claim_ttl
                )
                await uow.commit()
            if event is None:
                break

            outcome = await self._apply_use_case(event, mode=WebhookMode.APPLY)
            result.processed += 1
            if outcome.retryable or outcome.result == AppliedResult.FAILED:
                result.failed += 1
            elif outcome.result in _APPLIED_RESULTS:
                result.applied += 1
            else:
                result.noop += 1

        log_event(
            logger,
            logging.INFO,
            "stored_events_replayed",
            provider=provider,
            **result.model_dump(),
        )
        return result
