import logging
from datetime import timedelta

from pydantic import BaseModel

from shop_reconciler.application.apply_provider_event import ApplyProviderEventUseCase
from shop_reconciler.core.idempotency import sha256_hex
from shop_reconciler.core.models import AppliedResult, PaymentProvider
from shop_reconciler.core.webhook_payloads import (
    normalize_monobank_payload,
    normalize_stripe_event,
)
from shop_reconciler.infrastructure.event_queue import (
    DEFAULT_CLAIM_TTL,
    ProviderEventRepository,
)
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class IngestResult(BaseModel):
    event_id: str | None
    result: AppliedResult | None
    deduped: bool = False


class IngestWebhookEventUseCase:
    """Persist a verified webhook, then try to apply it inline.

    The insert is committed on its own, so the event survives even if the
    inline apply fails; the queue drain picks it up later in that case.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        apply_use_case: ApplyProviderEventUseCase,
        worker_id: str = "webhook",
        claim_ttl_seconds: int = int(DEFAULT_CLAIM_TTL.total_seconds()),
    ):
        self._unit_of_work = unit_of_work
        self._apply_use_case = apply_use_case
        self._worker_id = worker_id
        self._claim_ttl = timedelta(seconds=int(claim_ttl_seconds))

    async def __call__(
        self, provider: PaymentProvider, raw_body: bytes, payload: dict
    ) -> IngestResult:
        if provider == PaymentProvider.MONOBANK:
            event = normalize_monobank_payload(payload)
        else:
            event = normalize_stripe_event(payload)
        raw_sha256 = sha256_hex(raw_body)

        async with self._unit_of_work() as uow:
            stored = await uow.provider_events.insert_if_new(
                ProviderEventRepository.CreateDTO(
                    provider=event.provider,
                    event_key=event.event_key,
                    invoice_id=event.invoice_id,
                    status=event.status,
                    amount=event.amount,
                    ccy=event.ccy,
                    reference=event.reference,
                    raw_payload=payload,
                    normalized_payload=event.model_dump(mode="json"),
                    raw_sha256=raw_sha256,
                    provider_modified_at=event.provider_modified_at,
                )
            )
            if stored is None:
                duplicate = await uow.provider_events.find_duplicate(
                    event.event_key, raw_sha256
                )
                log_event(
                    logger,
                    logging.INFO,
                    "provider_event_deduped",
                    provider=provider,
                    event_key=event.event_key,
                )
                return IngestResult(
                    event_id=duplicate.id if duplicate is not None else None,
                    result=AppliedResult.DEDUPED,
                    deduped=True,
                )
            await uow.commit()

        async with self._unit_of_work() as uow:
            claimed = await uow.provider_events.claim_event(
                stored.id, self._worker_id, self._claim_ttl
            )
            await uow.commit()
        if claimed is None:
            return IngestResult(event_id=stored.id, result=None)

        outcome = await self._apply_use_case(claimed)
        return IngestResult(event_id=stored.id, result=outcome.result)
