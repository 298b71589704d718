from http import HTTPStatus

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from shop_reconciler.application.checkout import CheckoutDTO, CreateOrderUseCase
from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.application.payment_attempts import (
    PaymentSession,
    StartPaymentAttemptUseCase,
)
from shop_reconciler.core.errors import OrderNotFoundError
from shop_reconciler.core.models import Order
from shop_reconciler.infrastructure.repositories import DoesNotExist
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

router = APIRouter()


class OrderCreateRequest(CheckoutDTO):
    pass


class OrderResponseModel(Order):
    pass


@router.post(
    "/orders",
    status_code=HTTPStatus.CREATED,
    response_model=OrderResponseModel,
)
@inject
async def create_order(
    order: OrderCreateRequest,
    idempotency_key: str = Header(alias="Idempotency-Key"),
    create_order_use_case: CreateOrderUseCase = Depends(
        Provide[ApplicationContainer.create_order_use_case]
    ),
):
    result = await create_order_use_case(idempotency_key, order)
    if not result.created:
        return JSONResponse(
            content=OrderResponseModel(**result.order.model_dump()).model_dump(mode="json"),
            status_code=HTTPStatus.OK,
        )
    return result.order


@router.get(
    "/orders/{order_id}",
    status_code=HTTPStatus.OK,
    response_model=OrderResponseModel,
)
@inject
async def get_order(
    order_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        try:
            return await uow.orders.get_by_id(order_id)
        except DoesNotExist:
            raise OrderNotFoundError(order_id=order_id) from None


@router.post(
    "/orders/{order_id}/payments",
    status_code=HTTPStatus.OK,
    response_model=PaymentSession,
)
@inject
async def start_payment(
    order_id: str,
    start_payment_attempt_use_case: StartPaymentAttemptUseCase = Depends(
        Provide[ApplicationContainer.start_payment_attempt_use_case]
    ),
):
    return await start_payment_attempt_use_case(order_id)
