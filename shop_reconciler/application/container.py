from dependency_injector import containers, providers

from shop_reconciler.application.apply_provider_event import (
    ApplyProviderEventUseCase,
    DrainProviderEventsUseCase,
)
from shop_reconciler.application.cancel_payment import CancelMonobankPaymentUseCase
from shop_reconciler.application.checkout import CreateOrderUseCase
from shop_reconciler.application.ingest_webhook import IngestWebhookEventUseCase
from shop_reconciler.application.janitor_gate import JanitorJobGate
from shop_reconciler.application.needs_review_report import NeedsReviewReportUseCase
from shop_reconciler.application.payment_attempts import StartPaymentAttemptUseCase
from shop_reconciler.application.process_outbox_events import ProcessOutboxEventsUseCase
from shop_reconciler.application.refund import RefundOrderUseCase
from shop_reconciler.application.replay_stored_events import ReplayStoredEventsUseCase
from shop_reconciler.application.restock import RestockOrderUseCase
from shop_reconciler.application.sweep_stale_orders import (
    RestockStalePendingOrdersUseCase,
)
from shop_reconciler.infrastructure.container import InfrastructureContainer
from shop_reconciler.infrastructure.security import (
    AdminAuthenticator,
    ClientAddressResolver,
    CsrfVerifier,
    JanitorAuthenticator,
)


class ApplicationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    infrastructure_container = providers.Container[InfrastructureContainer](
        InfrastructureContainer,
        config=config.infrastructure,
    )

    janitor_authenticator = providers.Singleton[JanitorAuthenticator](
        JanitorAuthenticator, secret=config.security.janitor_secret
    )
    admin_authenticator = providers.Singleton[AdminAuthenticator](
        AdminAuthenticator,
        enabled=config.security.admin_api_enabled,
        token=config.security.admin_token,
    )
    csrf_verifier = providers.Singleton[CsrfVerifier](
        CsrfVerifier, secret=config.security.csrf_secret
    )
    client_address_resolver = providers.Singleton[ClientAddressResolver](
        ClientAddressResolver, trusted_proxies=config.security.trusted_proxies
    )

    create_order_use_case = providers.Singleton[CreateOrderUseCase](
        CreateOrderUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    start_payment_attempt_use_case = providers.Singleton[StartPaymentAttemptUseCase](
        StartPaymentAttemptUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        stripe_gateway=infrastructure_container.stripe_gateway,
        monobank_gateway=infrastructure_container.monobank_gateway,
        max_attempts=config.payments.max_attempts,
        monobank_destination=config.payments.monobank.destination,
        monobank_redirect_url=config.payments.monobank.redirect_url,
        monobank_webhook_url=config.payments.monobank.webhook_url,
    )
    apply_provider_event_use_case = providers.Singleton[ApplyProviderEventUseCase](
        ApplyProviderEventUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        webhook_modes=config.payments.webhook_mode,
        max_apply_attempts=config.payments.event_max_apply_attempts,
    )
    ingest_webhook_event_use_case = providers.Singleton[IngestWebhookEventUseCase](
        IngestWebhookEventUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        apply_use_case=apply_provider_event_use_case,
        worker_id=config.workers.worker_id,
        claim_ttl_seconds=config.payments.event_claim_ttl_seconds,
    )
    drain_provider_events_use_case = providers.Singleton[DrainProviderEventsUseCase](
        DrainProviderEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        apply_use_case=apply_provider_event_use_case,
        claim_ttl_seconds=config.payments.event_claim_ttl_seconds,
    )
    restock_order_use_case = providers.Singleton[RestockOrderUseCase](
        RestockOrderUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    restock_stale_orders_use_case = providers.Singleton[
        RestockStalePendingOrdersUseCase
    ](
        RestockStalePendingOrdersUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        worker_id=config.workers.worker_id,
    )
    refund_order_use_case = providers.Singleton[RefundOrderUseCase](
        RefundOrderUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        stripe_gateway=infrastructure_container.stripe_gateway,
        monobank_gateway=infrastructure_container.monobank_gateway,
        refund_enabled=config.payments.refund_enabled,
    )
    process_outbox_events_use_case = providers.Singleton[ProcessOutboxEventsUseCase](
        ProcessOutboxEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        publisher=infrastructure_container.order_event_publisher,
    )
    cancel_monobank_payment_use_case = providers.Singleton[CancelMonobankPaymentUseCase](
        CancelMonobankPaymentUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        monobank_gateway=infrastructure_container.monobank_gateway,
    )
    replay_stored_events_use_case = providers.Singleton[ReplayStoredEventsUseCase](
        ReplayStoredEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        apply_use_case=apply_provider_event_use_case,
        claim_ttl_seconds=config.payments.event_claim_ttl_seconds,
    )
    needs_review_report_use_case = providers.Singleton[NeedsReviewReportUseCase](
        NeedsReviewReportUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    janitor_job_gate = providers.Singleton[JanitorJobGate](
        JanitorJobGate,
        unit_of_work=infrastructure_container.unit_of_work,
        min_interval_seconds=config.janitor.min_interval_seconds,
    )
