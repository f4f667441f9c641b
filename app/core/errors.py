"""
Error taxonomy for the billing and credits core.

Services raise these; ``billing_error_handler`` (registered in ``app.main``)
turns them into ``{"detail": ..., **extra}`` JSON responses. Raw provider or
database exceptions never reach the response body.
"""
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for errors surfaced to HTTP clients."""

    status_code = 500

    def __init__(self, message: str, extra: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class ClientInputError(BillingError):
    status_code = 400


class UnknownPlan(ClientInputError):
    def __init__(self, plan_id):
        super().__init__("Invalid plan type", {"plan_type": plan_id})
        self.plan_id = plan_id


class PlanTypeMissing(ClientInputError):
    def __init__(self):
        super().__init__("Plan type not found in session")


class PaymentNotCompleted(ClientInputError):
    def __init__(self, payment_status: Optional[str] = None):
        super().__init__("Payment not completed", {"payment_status": payment_status})


class AuthError(BillingError):
    status_code = 401


class ForbiddenError(BillingError):
    status_code = 403


class NotFoundError(BillingError):
    status_code = 404


class QuotaExceededError(BillingError):
    status_code = 403

    def __init__(self, message: str = "Credit limit reached", used: int = 0, remaining: int = 0):
        super().__init__(message, {"used": used, "remaining": remaining})
        self.used = used
        self.remaining = remaining


class ProviderError(BillingError):
    """A payment provider call failed. Only the provider error code is kept."""

    status_code = 500

    def __init__(self, message: str = "Payment provider error", code: Optional[str] = None):
        super().__init__(message, {"code": code} if code else None)
        self.code = code


class DuplicateKeyError(BillingError):
    status_code = 400


class SignatureError(BillingError):
    status_code = 400

    def __init__(self, message: str = "Webhook signature invalid"):
        super().__init__(message)


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    content = {"detail": exc.message}
    content.update({k: v for k, v in exc.extra.items() if v is not None})
    return JSONResponse(status_code=exc.status_code, content=content)
