from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from shop_reconciler.application.cancel_payment import (
    CancelMonobankPaymentUseCase,
    CancelOutcome,
)
from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.application.refund import RefundOrderUseCase, RefundOutcome
from shop_reconciler.infrastructure.security import AdminAuthenticator, CsrfVerifier
from shop_reconciler.presentation.errors import NO_STORE_HEADERS

router = APIRouter(prefix="/admin")


@inject
def require_admin(
    authorization: str | None = Header(default=None),
    admin_authenticator: AdminAuthenticator = Depends(
        Provide[ApplicationContainer.admin_authenticator]
    ),
) -> None:
    admin_authenticator.authenticate(authorization)


@router.get("/csrf-token", dependencies=[Depends(require_admin)])
@inject
async def issue_csrf_token(
    csrf_verifier: CsrfVerifier = Depends(Provide[ApplicationContainer.csrf_verifier]),
):
    return JSONResponse(
        content={"csrf_token": csrf_verifier.issue()}, headers=NO_STORE_HEADERS
    )


@router.post(
    "/orders/{order_id}/refund",
    response_model=RefundOutcome,
    dependencies=[Depends(require_admin)],
)
@inject
async def refund_order(
    order_id: str,
    x_csrf_token: str | None = Header(default=None),
    csrf_verifier: CsrfVerifier = Depends(Provide[ApplicationContainer.csrf_verifier]),
    refund_order_use_case: RefundOrderUseCase = Depends(
        Provide[ApplicationContainer.refund_order_use_case]
    ),
):
    csrf_verifier.verify(x_csrf_token)
    return await refund_order_use_case(order_id)


@router.post(
    "/orders/{order_id}/cancel-payment",
    response_model=CancelOutcome,
    dependencies=[Depends(require_admin)],
)
@inject
async def cancel_payment(
    order_id: str,
    x_csrf_token: str | None = Header(default=None),
    csrf_verifier: CsrfVerifier = Depends(Provide[ApplicationContainer.csrf_verifier]),
    cancel_monobank_payment_use_case: CancelMonobankPaymentUseCase = Depends(
        Provide[ApplicationContainer.cancel_monobank_payment_use_case]
    ),
):
    csrf_verifier.verify(x_csrf_token)
    return await cancel_monobank_payment_use_case(order_id)
