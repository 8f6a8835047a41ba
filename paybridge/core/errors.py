"""Error normalization and handlers.

Every billing failure surfaces as an AppError carrying a stable code, an
HTTP status and a retryable flag. Handlers render one JSON envelope.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from paybridge.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)

_HTTP_CODES = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidPlanId(ValidationError):
    code = "INVALID_PLAN_ID"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class AuthorizationError(AppError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class PlanNotFound(NotFoundError):
    code = "PLAN_NOT_FOUND"


class SubscriptionNotFound(NotFoundError):
    code = "SUBSCRIPTION_NOT_FOUND"


class PaymentIntentNotFound(NotFoundError):
    code = "PAYMENT_INTENT_NOT_FOUND"


class CompanyNotFound(NotFoundError):
    code = "COMPANY_NOT_FOUND"


class ActiveSubscriptionExists(AppError):
    code = "ACTIVE_SUBSCRIPTION_EXISTS"
    status_code = 400


class PaymentIntentFailed(AppError):
    code = "PAYMENT_INTENT_FAILED"
    status_code = 400


class PaymentIntentIncomplete(AppError):
    """Payment exists but has not reached a terminal status yet."""
    code = "PAYMENT_INTENT_INCOMPLETE"
    status_code = 400
    retryable = True


class InvalidSubscriptionState(AppError):
    code = "INVALID_SUBSCRIPTION_STATE"
    status_code = 400


class NoActiveSubscription(AppError):
    code = "NO_ACTIVE_SUBSCRIPTION"
    status_code = 403


class UsageLimitExceeded(AppError):
    code = "USAGE_LIMIT_EXCEEDED"
    status_code = 403


class WebhookSignatureError(AppError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class PaymentProcessingFailed(AppError):
    code = "PAYMENT_PROCESSING_FAILED"
    status_code = 500
    retryable = True

    def __init__(self, message: str = "Payment processing failed, please try again", **kwargs):
        super().__init__(message, **kwargs)


class CustomerCreationFailed(AppError):
    code = "CUSTOMER_CREATION_FAILED"
    status_code = 500
    retryable = True


class WebhookProcessingFailed(AppError):
    code = "WEBHOOK_PROCESSING_FAILED"
    status_code = 500
    retryable = True


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.", **kwargs):
        super().__init__(message, **kwargs)


def _extract_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    retryable: bool = False,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """The one JSON error shape every handler returns."""
    rid = request_id or _extract_request_id(request)
    content = {
        "error": {"code": code, "message": message, "request_id": rid, "retryable": retryable},
        "detail": message,
    }
    return JSONResponse(status_code=status_code, content=content, headers={"x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "app.error",
        extra={"error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(
        request, exc.status_code, exc.code, exc.message, retryable=exc.retryable, request_id=exc.request_id
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"error_code": code, "status": exc.status_code})
    return error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
    return error_response(request, ValidationError.status_code, ValidationError.code, message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"error_code": "internal_error"})
    return error_response(request, 500, "internal_error", "Unexpected error")
