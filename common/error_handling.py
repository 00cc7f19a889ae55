"""
Marketplace error taxonomy and standardized API error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float

class ErrorCodes:
    """Standard error codes"""
    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Lookup
    NOT_FOUND = "NOT_FOUND"

    # Conflicts
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    INVALID_STATE = "INVALID_STATE"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    INSUFFICIENT_LOCKED_FUNDS = "INSUFFICIENT_LOCKED_FUNDS"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

class BusinessLogicError(Exception):
    """Base for errors surfaced to the caller; raised before any state is committed"""
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ValidationError(BusinessLogicError):
    """Malformed input, rejected before any mutation"""

class NotFoundError(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND
    status_code = 404

class ConflictError(BusinessLogicError):
    """Request is well-formed but conflicts with current state"""
    code = ErrorCodes.INVALID_STATE
    status_code = 409

class AlreadyClaimed(ConflictError):
    code = ErrorCodes.ALREADY_CLAIMED

    def __init__(self, order_id: str):
        super().__init__("order no longer available", context={"order_id": order_id})

class InvalidState(ConflictError):
    code = ErrorCodes.INVALID_STATE

class NotAuthorized(ConflictError):
    code = ErrorCodes.NOT_AUTHORIZED
    status_code = 403

class InsufficientLockedFunds(ConflictError):
    code = ErrorCodes.INSUFFICIENT_LOCKED_FUNDS

    def __init__(self, requested: int, locked_balance: int):
        super().__init__(
            f"deduction of {requested} exceeds locked balance {locked_balance}",
            field="amount",
            context={"requested": requested, "locked_balance": locked_balance},
        )

class InsufficientFunds(ConflictError):
    code = ErrorCodes.INSUFFICIENT_FUNDS

    def __init__(self, requested: int, available_balance: int, minimum: int):
        super().__init__(
            f"cannot withdraw {requested}; available balance is {available_balance}",
            field="amount",
            context={"requested": requested, "available_balance": available_balance, "minimum": minimum},
        )

class PriceOutOfRange(ConflictError):
    code = ErrorCodes.PRICE_OUT_OF_RANGE

    def __init__(self, price: int, floor: int, ceiling: int):
        self.floor = floor
        self.ceiling = ceiling
        super().__init__(
            f"price {price} must be between {floor} and {ceiling} per hour",
            field="price",
            context={"floor": floor, "ceiling": ceiling},
        )

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""
    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        field=exc.field,
        context=exc.context,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation exceptions"""

    # Extract first validation error
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}")

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    status_to_code = {
        404: ErrorCodes.NOT_FOUND,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
