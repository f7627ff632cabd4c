"""Typed error kinds for the billing engine and their HTTP mapping.

Every operation raises one of these explicitly. Callers catch the class,
never the message text.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code: str = "billing_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    """Malformed or missing request fields. Never retried internally."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidMetric(ValidationError):
    code = "invalid_metric"


class NotFoundError(BillingError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class SubscriptionNotFound(NotFoundError):
    code = "subscription_not_found"


class InvoiceNotFound(NotFoundError):
    code = "invoice_not_found"


class TransactionNotFound(NotFoundError):
    code = "transaction_not_found"


class PlanUnavailable(NotFoundError):
    """The plan has no self-service price (ENTERPRISE) or does not exist."""

    code = "plan_unavailable"


class InvalidSignature(BillingError):
    """Webhook authenticity failure."""

    code = "invalid_signature"
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidStateTransition(BillingError):
    code = "invalid_state_transition"
    status_code = status.HTTP_409_CONFLICT


class InvalidTierTransition(InvalidStateTransition):
    code = "invalid_tier_transition"


class DuplicateSubscription(BillingError):
    code = "duplicate_subscription"
    status_code = status.HTTP_409_CONFLICT


class GatewayError(BillingError):
    """The external payment provider failed or rejected the request."""

    code = "gateway_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retryable: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.retryable = retryable


class ConcurrencyConflict(BillingError):
    """Optimistic-concurrency guard tripped. Safe to retry the whole unit."""

    code = "concurrency_conflict"
    status_code = status.HTTP_409_CONFLICT


def create_error_response(
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> dict:
    """Build the standard JSON error body."""
    response = {
        "message": message,
        "code": code,
        "status": status_code,
    }
    if details:
        response["details"] = details
    return response


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render any BillingError as a JSON response."""
    logger.warning(
        f"{exc.__class__.__name__}: {exc.message} for {request.method} {request.url.path}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            code=exc.code,
            details=exc.details,
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the billing error handlers to the application."""
    app.add_exception_handler(BillingError, billing_error_handler)
