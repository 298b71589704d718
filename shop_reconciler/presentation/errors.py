import logging
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shop_reconciler.core.errors import DomainError, ErrorCode, RateLimitedError
from shop_reconciler.infrastructure.structured_log import log_event

logger = logging.getLogger(__name__)

HTTP_STATUS_BY_CODE: dict[ErrorCode, HTTPStatus] = {
    ErrorCode.MONEY_VALUE_INVALID: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorCode.ORDER_STATE_INVALID: HTTPStatus.CONFLICT,
    ErrorCode.ORDER_NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorCode.INVALID_PAYLOAD: HTTPStatus.BAD_REQUEST,
    ErrorCode.INSUFFICIENT_STOCK: HTTPStatus.CONFLICT,
    ErrorCode.PRICE_CONFIG_ERROR: HTTPStatus.BAD_REQUEST,
    ErrorCode.IDEMPOTENCY_CONFLICT: HTTPStatus.CONFLICT,
    ErrorCode.PAYMENT_ATTEMPTS_EXHAUSTED: HTTPStatus.CONFLICT,
    ErrorCode.PSP_UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorCode.REFUND_DISABLED: HTTPStatus.CONFLICT,
    ErrorCode.REFUND_NOT_ALLOWED: HTTPStatus.CONFLICT,
    ErrorCode.ADMIN_API_DISABLED: HTTPStatus.FORBIDDEN,
    ErrorCode.UNAUTHORIZED: HTTPStatus.UNAUTHORIZED,
    ErrorCode.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ErrorCode.CSRF_REJECTED: HTTPStatus.FORBIDDEN,
    ErrorCode.ORIGIN_BLOCKED: HTTPStatus.FORBIDDEN,
    ErrorCode.INVALID_SIGNATURE: HTTPStatus.BAD_REQUEST,
    ErrorCode.RATE_LIMITED: HTTPStatus.TOO_MANY_REQUESTS,
    ErrorCode.WEBHOOK_DISABLED: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorCode.JANITOR_DISABLED: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorCode.WEBHOOK_MODE_NOT_STORE: HTTPStatus.CONFLICT,
    ErrorCode.CANCEL_DISABLED: HTTPStatus.CONFLICT,
    ErrorCode.CANCEL_NOT_ALLOWED: HTTPStatus.CONFLICT,
    ErrorCode.CANCEL_IN_PROGRESS: HTTPStatus.CONFLICT,
    ErrorCode.INTERNAL_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
}

NO_STORE_HEADERS = {"Cache-Control": "no-store"}


def error_response(
    code: ErrorCode,
    message: str,
    details: dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    status = HTTP_STATUS_BY_CODE.get(code, HTTPStatus.INTERNAL_SERVER_ERROR)
    body = {"code": str(code), "message": message}
    # Server-side faults never leak their details to the caller.
    if details and status < HTTPStatus.INTERNAL_SERVER_ERROR:
        body.update(details)
    return JSONResponse(
        content={"error": body},
        status_code=status,
        headers={**NO_STORE_HEADERS, **(headers or {})},
    )


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status = HTTP_STATUS_BY_CODE.get(exc.code, HTTPStatus.INTERNAL_SERVER_ERROR)
    log_event(
        logger,
        logging.ERROR if status >= HTTPStatus.INTERNAL_SERVER_ERROR else logging.INFO,
        "request_failed",
        path=request.url.path,
        code=exc.code,
        details=exc.details,
    )
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(exc.code, exc.message, exc.details, headers)


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    return error_response(
        ErrorCode.INVALID_PAYLOAD, "Invalid payload", {"fields": fields}
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_event(
        logger,
        logging.ERROR,
        "request_crashed",
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return error_response(ErrorCode.INTERNAL_ERROR, "Internal error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
