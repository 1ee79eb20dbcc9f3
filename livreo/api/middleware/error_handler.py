"""Global error handling middleware for consistent error responses."""

import logging
import time
import traceback
from typing import Any, Callable

from fastapi import HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from livreo.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors.

    Domain errors carry their HTTP status and cross service boundaries
    unchanged until the error middleware turns them into a response.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type: str = "api_error",
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(message)


class ValidationError(APIError):
    """Request validation error."""

    def __init__(self, message: str = "Validation error") -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST, "validation_error")


class AuthenticationError(APIError):
    """Missing, invalid or expired credential."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, "authentication_error")


class AuthorizationError(APIError):
    """Authorization or ownership failure."""

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message, status.HTTP_403_FORBIDDEN, "authorization_error")


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND, "not_found")


class ConflictError(APIError):
    """State precondition violation, e.g. acting on a non-pending order."""

    def __init__(self, message: str = "Conflict") -> None:
        super().__init__(message, status.HTTP_409_CONFLICT, "conflict")


class RateLimitError(APIError):
    """Rate limit exceeded error."""

    def __init__(
        self,
        message: str = "Too many requests",
        retry_after: int = 60,
        limit: int | None = None,
    ) -> None:
        super().__init__(message, status.HTTP_429_TOO_MANY_REQUESTS, "rate_limit_exceeded")
        self.retry_after = retry_after
        self.limit = limit


class PaymentProviderError(APIError):
    """Upstream payment provider failed or answered unexpectedly."""

    def __init__(self, message: str = "Payment provider error") -> None:
        super().__init__(message, status.HTTP_502_BAD_GATEWAY, "payment_provider_error")


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    request_id: str | None = None,
) -> JSONResponse:
    """Create a standardized JSON error response.

    Args:
        error_type: Error category for client handling.
        message: Human-readable error description.
        status_code: HTTP status code.
        request_id: Optional request ID for tracing.

    Returns:
        JSONResponse: Formatted error response.
    """
    error_response = ErrorResponse(error=message, code=error_type, request_id=request_id)
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 with the first failing field."""
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return create_error_response(
        error_type="validation_error",
        message=message,
        status_code=status.HTTP_400_BAD_REQUEST,
        request_id=request.headers.get("X-Request-ID"),
    )


def rate_limit_headers(error: RateLimitError, now: float | None = None) -> dict[str, str]:
    """Headers sent with a 429 so clients know when to retry."""
    current = time.time() if now is None else now
    headers = {
        "Retry-After": str(error.retry_after),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(int(current) + error.retry_after),
    }
    if error.limit is not None:
        headers["X-RateLimit-Limit"] = str(error.limit)
    return headers


async def error_handler_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Turn exceptions raised below into the JSON error envelope.

    Domain errors keep their status and message. Anything unexpected is
    logged with its traceback and answered with a generic 500 so provider
    or database details never reach the client.
    """
    request_id = request.headers.get("X-Request-ID")

    try:
        return await call_next(request)

    except APIError as e:
        log = logger.error if e.status_code >= 500 else logger.warning
        log(
            "%s %s failed: %s - %s",
            request.method,
            request.url.path,
            e.error_type,
            e.message,
            extra={"request_id": request_id, "status_code": e.status_code},
        )
        response = create_error_response(e.error_type, e.message, e.status_code, request_id)
        if isinstance(e, RateLimitError):
            response.headers.update(rate_limit_headers(e))
        return response

    except HTTPException as e:
        logger.warning("HTTP exception: %s - %s", e.status_code, e.detail, extra={"request_id": request_id})
        return create_error_response("http_error", str(e.detail), e.status_code, request_id)

    except Exception as e:
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(e),
            traceback.format_exc(),
            extra={"request_id": request_id},
        )
        return create_error_response(
            "internal_error",
            "An unexpected error occurred",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id,
        )
