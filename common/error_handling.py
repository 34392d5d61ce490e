"""
Error taxonomy for the hierarchy/ledger core and its HTTP mapping
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
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"

    # Business Logic
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    CONFLICT = "CONFLICT"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"

class BusinessLogicError(Exception):
    """Base class for rule violations; never retried"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ValidationFailed(BusinessLogicError):
    code = ErrorCodes.VALIDATION_ERROR

class InvalidAmount(BusinessLogicError):
    code = ErrorCodes.INVALID_AMOUNT

class PermissionDenied(BusinessLogicError):
    code = ErrorCodes.FORBIDDEN

class Unauthorized(BusinessLogicError):
    code = ErrorCodes.UNAUTHORIZED

class NotFound(BusinessLogicError):
    code = ErrorCodes.ACCOUNT_NOT_FOUND

class Conflict(BusinessLogicError):
    code = ErrorCodes.CONFLICT

class InsufficientBalance(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_FUNDS

class ServiceError(Exception):
    """Infrastructure failure, distinct from a rule violation"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, original_error: Exception = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class TransientStoreError(ServiceError):
    """Connection loss, timeout or deadlock against the store; safe to retry the whole unit"""
    code = ErrorCodes.DATABASE_ERROR

BUSINESS_STATUS_CODES = {
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INVALID_AMOUNT: 400,
    ErrorCodes.INSUFFICIENT_FUNDS: 400,
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.CONFLICT: 409,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.DATABASE_ERROR: 503,
}

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    request_id: str = None
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
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json")
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""
    status_code = BUSINESS_STATUS_CODES.get(exc.code, 400)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context or None,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""
    status_code = SERVICE_STATUS_CODES.get(exc.code, 500)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""
    request_id = getattr(request.state, 'request_id', None)

    # Extract first validation error
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "request_id": request_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""
    request_id = getattr(request.state, 'request_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.ACCOUNT_NOT_FOUND,
        409: ErrorCodes.CONFLICT,
        503: ErrorCodes.DATABASE_ERROR,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        request_id=request_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
