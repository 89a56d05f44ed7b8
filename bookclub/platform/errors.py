"""
Error shapes for the book club entitlement services.

Every error returned to a client has the form
``{"error": {"code", "message", "details"}}``. Stack traces and role
classification internals are never returned to clients.

Status codes in use:
- 400: malformed ids, invalid tiers, duplicate membership
- 401: no authenticated user
- 403: permission denied
- 404: club or user referenced by a limit check not found
- 500: permission or limit check could not be completed
- 503: backing store unavailable
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """Base error carrying a machine code, a client-safe message and details."""

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
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Rejected input (400). Raised before any store access."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AuthenticationError(AppError):
    """No authenticated user (401)."""

    def __init__(self, message: str = "Authentication required", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class PermissionDeniedError(AppError):
    """Permission denied (403)."""

    def __init__(self, message: str = "Insufficient permissions", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="PERMISSION_DENIED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class CheckFailedError(AppError):
    """A permission or limit check could not be evaluated (500)."""

    def __init__(self, message: str = "Permission check failed"):
        super().__init__(
            code="CHECK_FAILED",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class ServiceUnavailableError(AppError):
    """Backing store unavailable (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


def get_correlation_id(request: Request) -> str:
    """Correlation id from the request header, request state, or a fresh uuid4."""
    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        return correlation_id
    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id
    return str(uuid.uuid4())


def error_response(error: AppError, correlation_id: Optional[str] = None) -> JSONResponse:
    headers = {CORRELATION_HEADER: correlation_id} if correlation_id else None
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turns every escaping exception into the standard error shape."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
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
                },
            )
            return error_response(e, correlation_id)

        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={
                    "correlation_id": correlation_id,
                    "status_code": e.status_code,
                    "path": request.url.path,
                },
            )
            return JSONResponse(
                status_code=e.status_code,
                content={"error": {"code": "HTTP_ERROR", "message": str(e.detail), "details": {}}},
                headers={CORRELATION_HEADER: correlation_id},
            )

        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                },
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
                headers={CORRELATION_HEADER: correlation_id},
            )
