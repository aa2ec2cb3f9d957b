"""
Error handling for the two-factor API

Provides:
- API exception classes
- Exception handlers for FastAPI
- Standardized error responses: {"error", "message", "path"}
"""
import logging
from typing import Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from twofactor.exceptions import TwoFactorError, EntropyUnavailable

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base class for API exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        headers: Optional[dict] = None,
        details: Optional[dict] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.headers = headers
        self.details = details
        super().__init__(self.message)


class InvalidCodeError(APIError):
    """Submitted code was not accepted"""

    def __init__(self, message: str = "Invalid verification code", attempts_remaining: Optional[int] = None):
        details = None
        if attempts_remaining is not None:
            details = {"attempts_remaining": attempts_remaining}
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="INVALID_CODE",
            details=details,
        )


class TooManyAttemptsError(APIError):
    """Verification is locked for this identity"""

    def __init__(self, retry_after: int, locked_until: Optional[str] = None):
        super().__init__(
            message="Too many failed verification attempts. Try again later.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error_code="RATE_LIMITED",
            headers={"Retry-After": str(max(1, retry_after))},
            details={"locked_until": locked_until} if locked_until else None,
        )


class ConflictError(APIError):
    """Operation not allowed in the credential's current state"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="INVALID_STATE",
        )


class AuthenticationError(APIError):
    """Authentication failed"""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTHENTICATION_ERROR"
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle API exceptions"""
    logger.warning(
        f"API error: {exc.error_code} - {exc.message}",
        extra={"status_code": exc.status_code, "path": request.url.path}
    )

    content = {
        "error": exc.error_code,
        "message": exc.message,
        "path": request.url.path
    }
    if exc.details:
        content.update(exc.details)

    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors"""
    errors = exc.errors()

    # Submitted codes are secrets; drop the echoed input
    for error in errors:
        error.pop("input", None)
        error.pop("ctx", None)

    logger.warning(
        f"Validation error on {request.url.path}",
        extra={"path": request.url.path}
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": errors,
            "path": request.url.path
        }
    )


async def entropy_error_handler(request: Request, exc: EntropyUnavailable) -> JSONResponse:
    """The secure random source failed; refuse rather than degrade"""
    logger.critical(
        f"Entropy unavailable: {str(exc)}",
        extra={"path": request.url.path}
    )

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "ENTROPY_UNAVAILABLE",
            "message": "Secure random source unavailable",
            "path": request.url.path
        }
    )


async def twofactor_error_handler(request: Request, exc: TwoFactorError) -> JSONResponse:
    """Handle unrecoverable two-factor errors (bad stored secret, bad configuration)"""
    logger.error(
        f"Two-factor error: {type(exc).__name__}: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "TWO_FACTOR_ERROR",
            "message": "Two-factor authentication is misconfigured",
            "path": request.url.path
        }
    )


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy database errors"""
    logger.error(
        f"Database error: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )

    if isinstance(exc, IntegrityError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": "INTEGRITY_ERROR",
                "message": "Database integrity constraint violated",
                "path": request.url.path
            }
        )
    elif isinstance(exc, OperationalError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "DATABASE_UNAVAILABLE",
                "message": "Database is currently unavailable",
                "path": request.url.path
            }
        )
    else:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "DATABASE_ERROR",
                "message": "An unexpected database error occurred",
                "path": request.url.path
            }
        )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "path": request.url.path
        }
    )


def register_error_handlers(app):
    """Register all error handlers with the FastAPI app"""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(EntropyUnavailable, entropy_error_handler)
    app.add_exception_handler(TwoFactorError, twofactor_error_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)

    logger.info("Error handlers registered")
