"""
Consistent error handling for the membership engine.

Every lifecycle and storage failure uses one of these classes so callers get
a machine-readable code and a stable response shape. Stack traces are NEVER
returned to HTTP clients.

Error kinds:
- 400: ValidationError (malformed purchase request, unknown plan)
- 402: GatewayDeclined (hard decline, invoice marked failed)
- 404: NotFoundError
- 409: ConcurrencyConflict, InvalidTransitionError, InvoiceLockedError
- 503: ConfigurationError (gateway not configured), GatewayTransient (retryable)
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class AppError(Exception):
    """
    Base error for the membership service.

    All membership errors inherit from this class.
    """

    retryable = False

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Render the error envelope returned by the API."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Malformed request, rejected before any invoice is created (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class NotFoundError(AppError):
    """A member, membership, subscription or invoice does not exist (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ConfigurationError(AppError):
    """Gateway is unknown to the registry or not configured (503)."""

    def __init__(self, gateway_id: str, message: Optional[str] = None):
        super().__init__(
            code="GATEWAY_NOT_CONFIGURED",
            message=message or f"Payment gateway '{gateway_id}' is not configured",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"gateway_id": gateway_id},
        )


class GatewayDeclined(AppError):
    """Hard payment failure; the invoice is marked failed (402)."""

    def __init__(self, gateway_id: str, reason: str, invoice_id: Optional[str] = None):
        details: dict[str, Any] = {"gateway_id": gateway_id}
        if invoice_id:
            details["invoice_id"] = invoice_id
        super().__init__(
            code="PAYMENT_DECLINED",
            message=reason,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details,
        )


class GatewayTransient(AppError):
    """Timeout or network failure; the invoice stays pending and the caller may retry (503)."""

    retryable = True

    def __init__(self, gateway_id: str, reason: str, invoice_id: Optional[str] = None):
        details: dict[str, Any] = {"gateway_id": gateway_id, "retryable": True}
        if invoice_id:
            details["invoice_id"] = invoice_id
        super().__init__(
            code="PAYMENT_TEMPORARILY_UNAVAILABLE",
            message=reason,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class ConcurrencyConflict(AppError):
    """Optimistic-lock mismatch on a subscription transition (409).

    The caller must re-fetch the subscription and retry; nothing was written.
    """

    retryable = True

    def __init__(self, entity: str, entity_id: str, expected: Optional[str] = None):
        details: dict[str, Any] = {"entity": entity, "entity_id": entity_id}
        if expected is not None:
            details["expected"] = expected
        super().__init__(
            code="CONCURRENCY_CONFLICT",
            message=f"{entity} '{entity_id}' was modified concurrently",
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class InvalidTransitionError(AppError):
    """Subscription state change not allowed by the state machine (409)."""

    def __init__(self, subscription_id: str, current: str, target: str):
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Cannot move subscription '{subscription_id}' from {current} to {target}",
            status_code=status.HTTP_409_CONFLICT,
            details={"subscription_id": subscription_id, "from": current, "to": target},
        )


class InvoiceLockedError(AppError):
    """Attempt to change a paid invoice other than by refund (409)."""

    def __init__(self, invoice_id: str):
        super().__init__(
            code="INVOICE_LOCKED",
            message=f"Invoice '{invoice_id}' is paid and can only be refunded",
            status_code=status.HTTP_409_CONFLICT,
            details={"invoice_id": invoice_id},
        )


def generate_correlation_id() -> str:
    """Return a fresh correlation id for a request."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """
    Correlation id for the request, generating one if absent.

    The X-Correlation-ID header wins over a value stored on request state.
    """
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Turns any exception raised by a route into the error envelope.

    Tracebacks are logged, never returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except AppError as e:
            logger.warning(
                "Application error",
                extra={
                    "correlation_id": correlation_id,
                    "error_code": e.code,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content=e.to_dict(),
                headers={"X-Correlation-ID": correlation_id},
            )

        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )
