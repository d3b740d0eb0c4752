from typing import Any, Optional
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from storefront.common.utils import build_error, json_error
from storefront.common.constants import request_id_ctx
from storefront.common.logging_setup import get_logger

logger = get_logger("storefront.errors")


class StorefrontError(Exception):
    """Base for every error the checkout core raises on purpose.
    Carries the http status and a stable error code , the message is safe to show to clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "SERVER_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "Internal Server Error", *, details: Optional[Any] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code


class ValidationError(StorefrontError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class NotFound(StorefrontError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class CartNotFound(NotFound):
    def __init__(self, message: str = "Cart not found", **kwargs):
        super().__init__(message, **kwargs)


class AddressNotFound(NotFound):
    def __init__(self, message: str = "Address not found", **kwargs):
        super().__init__(message, **kwargs)


class OrderNotFound(NotFound):
    def __init__(self, message: str = "Order not found", **kwargs):
        super().__init__(message, **kwargs)


class Forbidden(StorefrontError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class CartEmpty(StorefrontError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "CART_EMPTY"

    def __init__(self, message: str = "Cart is empty", **kwargs):
        super().__init__(message, **kwargs)


class InsufficientStock(StorefrontError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None,
                 product_name: Optional[str] = None):
        label = f'"{product_name}"' if product_name else f"product {product_id}"
        if available is None:
            message = f"Insufficient stock for {label}. Requested: {requested}"
        else:
            message = f"Insufficient stock for {label}. Available: {available}, Requested: {requested}"
        super().__init__(message, details={"product_id": product_id, "requested": requested,
                                           "available": available})
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStatusTransition(StorefrontError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid status transition from {current} to {target}",
                         details={"from": current, "to": target})
        self.current = current
        self.target = target


class GatewayError(StorefrontError):
    """Upstream payment provider failure. 502 for transport / provider side errors ,
    400 when the provider rejected what we sent (declined card , bad payment method)."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None,
                 timeout: bool = False, provider_status: Optional[int] = None, details: Optional[Any] = None):
        super().__init__(message, details=details, status_code=status_code)
        self.provider = provider
        self.timeout = timeout
        self.provider_status = provider_status


class PersistFailure(StorefrontError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "PERSIST_FAILURE"
    retryable = True


class OrderPersistFailure(PersistFailure):
    def __init__(self, message: str = "Could not save the order , please retry", **kwargs):
        super().__init__(message, **kwargs)


async def storefront_error_handler(request: Request, exc: StorefrontError):
    rid = request_id_ctx.get(None)

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request.domain_error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "reason": exc.message,
        },
    )

    details = exc.details if exc.status_code < 500 else None
    if exc.retryable:
        details = {"retryable": True}
    payload = build_error(code=exc.code, message=exc.message, details=details, request_id=rid)
    return json_error(payload, status_code=exc.status_code)


async def fallback_handler(request: Request, exc: Exception):

    rid = request_id_ctx.get(None)

    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc,
    )

    payload = build_error(code="SERVER_ERROR", message="Internal Server Error", request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": exc.errors(),
            "path": request.url.path,
        },
    )

    payload = build_error(code="UNPROCESSABLE_ENTITY", message="Validation failed", request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):

    rid = request_id_ctx.get(None)
    payload = build_error(code=f"HTTP_{exc.status_code}", message=str(exc.detail), request_id=rid)
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(
        Exception,  # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(
        StorefrontError,
        storefront_error_handler
    )

    app.add_exception_handler(
        RequestValidationError,
        validation_exception_handler
    )

    app.add_exception_handler(
        HTTPException,
        http_exception_handler
    )
