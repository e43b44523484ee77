"""Stock ledger errors and the handlers that render them.

Every business-rule failure raised by the services derives from
StockLedgerException and carries an HTTP status, a stable error code and
optional structured details.  The handlers below turn them (and request
validation / database errors) into one response envelope:

    {"error": {"code": "...", "message": "...", "details": {...}}}
"""

import logging
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class StockLedgerException(Exception):
    """Base exception for stock ledger errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class StockValidationError(StockLedgerException):
    """Malformed or contradictory input, detected before any write."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class InsufficientStockError(StockLedgerException):
    """A stock-decreasing change would drive a counter below zero."""

    def __init__(self, item: str, available: float, requested: float, message: str | None = None):
        self.item = item
        self.available = available
        self.requested = requested
        super().__init__(
            message=message or (
                f"Insufficient stock for {item}: available {available:g}, requested {requested:g}"
            ),
            status_code=status.HTTP_409_CONFLICT,
            error_code="INSUFFICIENT_STOCK",
            details={"item": item, "available": available, "requested": requested},
        )


class ResourceNotFoundError(StockLedgerException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )


class BatchLinkedError(StockLedgerException):
    """Direct edit or delete of a movement generated by a batch."""

    def __init__(self, movement_id: str, batch_id: str):
        super().__init__(
            message=(
                f"Movement {movement_id} belongs to batch {batch_id}; "
                "delete the batch to reverse it"
            ),
            status_code=status.HTTP_409_CONFLICT,
            error_code="BATCH_LINKED",
            details={"movement_id": movement_id, "batch_id": batch_id},
        )


class AlreadyAttachedError(StockLedgerException):
    """Second finished-goods attachment on the same batch."""

    def __init__(self, batch_code: str):
        super().__init__(
            message=f"Finished goods are already attached to batch {batch_code}",
            status_code=status.HTTP_409_CONFLICT,
            error_code="ALREADY_ATTACHED",
            details={"batch_code": batch_code},
        )


class DuplicateReferenceError(StockLedgerException):
    """The same material, drum or finished good appears twice in one request."""

    def __init__(self, reference_type: str, reference_id: str):
        super().__init__(
            message=f"Duplicate {reference_type} in request: {reference_id}",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="DUPLICATE_REFERENCE",
            details={"reference_type": reference_type, "id": reference_id},
        )


class NegativeStockError(StockLedgerException):
    """Reversing a movement would leave a counter negative."""

    def __init__(self, item: str, available: float, requested: float):
        self.item = item
        self.available = available
        self.requested = requested
        super().__init__(
            message=(
                f"Cannot reverse: {item} would go negative "
                f"(available {available:g}, reversal {requested:g})"
            ),
            status_code=status.HTTP_409_CONFLICT,
            error_code="NEGATIVE_STOCK",
            details={"item": item, "available": available, "requested": requested},
        )


class LedgerIntegrityError(StockLedgerException):
    """Aggregate counter disagrees with its sub-allocations after a write."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="LEDGER_INTEGRITY",
            details=details,
        )


# ── Envelope ─────────────────────────────────────────────────

def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    error = {"code": error_code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})


def _where(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


# (substring of the driver message, error code, user-facing message)
_INTEGRITY_RULES = [
    ("unique", "DUPLICATE_RECORD", "A record with this value already exists"),
    ("foreign key", "FOREIGN_KEY_VIOLATION", "Referenced record does not exist"),
    ("not null", "NULL_VALUE_NOT_ALLOWED", "Required field is missing"),
    ("check constraint", "CHECK_VIOLATION", "Movement must reference exactly one item"),
]


# ── Handlers ─────────────────────────────────────────────────

async def stock_ledger_exception_handler(
    request: Request,
    exc: StockLedgerException,
) -> JSONResponse:
    """Business-rule failure: surfaced verbatim, never retried."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s on %s: %s", exc.error_code, request.url.path, exc.message, extra=_where(request))
    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("HTTP %s: %s", exc.status_code, exc.detail, extra=_where(request))
    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Request body / query failed pydantic validation."""
    errors = [
        {
            "field": " -> ".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning("Invalid request on %s: %d error(s)", request.url.path, len(errors), extra=_where(request))
    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def database_exception_handler(
    request: Request,
    exc: IntegrityError,
) -> JSONResponse:
    """A constraint the services did not pre-check (e.g. a concurrent duplicate label)."""
    logger.error("Integrity error on %s: %s", request.url.path, exc, extra=_where(request))
    driver_message = str(getattr(exc, "orig", exc)).lower()
    for needle, error_code, message in _INTEGRITY_RULES:
        if needle in driver_message:
            break
    else:
        error_code, message = "INTEGRITY_ERROR", "Database constraint violation"
    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message=message,
        error_code=error_code,
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    """Storage/connectivity failure; the only class a client may retry."""
    logger.error("Database unavailable on %s: %s", request.url.path, exc, extra=_where(request))
    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.error(
        "Unhandled %s on %s", type(exc).__name__, request.url.path,
        extra=_where(request), exc_info=exc,
    )
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    app.add_exception_handler(StockLedgerException, stock_ledger_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
