from fastapi import Request
from fastapi.responses import JSONResponse
import logging
from typing import Dict, Any
from ticket_commerce.core.logging import log_operation_context

logger = logging.getLogger(__name__)

class APIError(Exception):
    """Base API exception"""

    def __init__(self, message: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

class ValidationError(APIError):
    """Validation related errors"""

    def __init__(self, message: str = "Validation failed", details: Dict[str, Any] = None):
        super().__init__(message, 400, details)

class InvalidTicketType(ValidationError):
    """Ticket type missing, cancelled, off sale or foreign to the organization"""

    def __init__(self, message: str = "Invalid ticket type", details: Dict[str, Any] = None):
        super().__init__(message, details)

class InvalidRange(ValidationError):
    """A date range whose end precedes its start"""

    def __init__(self, message: str = "Invalid date range", details: Dict[str, Any] = None):
        super().__init__(message, details)

class NotFoundError(APIError):
    """Requested record does not exist"""

    def __init__(self, message: str = "Not found", details: Dict[str, Any] = None):
        super().__init__(message, 404, details)

class CodeError(APIError):
    """Redemption code rejected; `reason` names the sub-case"""

    reason = "invalid"

    def __init__(self, message: str = "Invalid redemption code", details: Dict[str, Any] = None):
        details = dict(details or {})
        details.setdefault("reason", self.reason)
        super().__init__(message, 400, details)

class CodeExhausted(CodeError):
    reason = "exhausted"

    def __init__(self, message: str = "Redemption code has no remaining uses", details: Dict[str, Any] = None):
        super().__init__(message, details)

class CodeExpired(CodeError):
    reason = "expired"

    def __init__(self, message: str = "Redemption code is not currently valid", details: Dict[str, Any] = None):
        super().__init__(message, details)

class CodeNotApplicable(CodeError):
    reason = "not_applicable"

    def __init__(self, message: str = "Redemption code does not apply to this ticket type", details: Dict[str, Any] = None):
        super().__init__(message, details)

# Name surfaced by the order builder for any rejected code
InvalidCode = CodeError

class OverRefundError(APIError):
    """Requested refund quantity exceeds what is still refundable"""

    def __init__(self, message: str = "Refund exceeds refundable quantity", details: Dict[str, Any] = None):
        super().__init__(message, 409, details)

class ConcurrencyConflict(APIError):
    """A concurrent transaction changed the rows this one depended on"""

    def __init__(self, message: str = "Concurrent update, please retry", details: Dict[str, Any] = None):
        super().__init__(message, 409, details)

class ConfigurationError(APIError):
    """Server-side misconfiguration, not correctable by the caller"""

    def __init__(self, message: str = "Server misconfiguration", details: Dict[str, Any] = None):
        super().__init__(message, 500, details)

class NoFeeScheduleConfigured(ConfigurationError):

    def __init__(self, message: str = "No fee schedule configured", details: Dict[str, Any] = None):
        super().__init__(message, details)

class ReconciliationError(APIError):
    """Computed totals broke a pricing invariant"""

    def __init__(self, message: str = "Order totals do not reconcile", details: Dict[str, Any] = None):
        super().__init__(message, 500, details)

async def api_exception_handler(request: Request, exc: APIError):
    """Handle custom API exceptions with logging"""

    context = log_operation_context(
        f"{request.method} {request.url.path}",
        order_id=request.path_params.get("order_id"),
        organization_id=request.path_params.get("organization_id")
    )
    context.update({
        "error_type": exc.__class__.__name__,
        "status_code": exc.status_code,
    })

    if exc.status_code >= 500:
        logger.error(f"API Error: {exc.message}", extra={"context": context})
        # Late import: the notifier reads settings at import time
        from ticket_commerce.services.error_notifier import notify_error
        await notify_error(exc, context)
    else:
        logger.warning(f"API Error: {exc.message}", extra={"context": context})

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "message": exc.message,
            "details": exc.details,
            "timestamp": context["timestamp"]
        }
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    context = log_operation_context(f"{request.method} {request.url.path}")
    context.update({"error_type": exc.__class__.__name__})

    logger.error(f"Unexpected error: {str(exc)}", extra={"context": context}, exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "message": "Internal server error",
            "timestamp": context["timestamp"]
        }
    )
