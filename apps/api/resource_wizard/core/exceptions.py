"""
Standardized exception handling for consistent API error responses.
"""

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional, Any
import structlog

from resource_wizard.core.errors import WizardError, ErrorCode

logger = structlog.get_logger()


class APIError(HTTPException):
    """Base API error with consistent structure."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Any] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            error_code="NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
            details={"resource": resource, "id": resource_id},
        )


class ValidationError(APIError):
    """Input validation error."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=400,
            error_code="VALIDATION_ERROR",
            message=message,
            details=details,
        )


class AuthorizationError(APIError):
    """Authorization/permission error."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(
            status_code=403,
            error_code="FORBIDDEN",
            message=message,
        )


class ConflictError(APIError):
    """Request conflicts with the current wizard state."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=409,
            error_code="CONFLICT",
            message=message,
            details=details,
        )


# Wizard error codes that map to something other than 500
WIZARD_ERROR_STATUS = {
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.BATCH_IN_PROGRESS: 409,
    ErrorCode.CONTENT_UNSUPPORTED: 400,
    ErrorCode.DB_WRITE_FAILED: 500,
}


def api_error_response(error: APIError) -> JSONResponse:
    """Create standardized error response."""
    content = {
        "error": {
            "code": error.error_code,
            "message": error.message,
        }
    }
    if error.details:
        content["error"]["details"] = error.details

    return JSONResponse(
        status_code=error.status_code,
        content=content,
    )


async def api_exception_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    logger.warning(
        "API error",
        error_code=exc.error_code,
        message=exc.message,
        path=request.url.path,
    )
    return api_error_response(exc)


async def wizard_exception_handler(request: Request, exc: WizardError) -> JSONResponse:
    """Render WizardError raised out of a route in the APIError shape."""
    status_code = WIZARD_ERROR_STATUS.get(exc.code, 500)
    logger.warning(
        "Wizard error",
        error_code=exc.code.value,
        message=exc.message,
        path=request.url.path,
    )
    return api_error_response(
        APIError(
            status_code=status_code,
            error_code=exc.code.value,
            message=exc.message,
            details=exc.details or None,
        )
    )
