"""FastAPI dependency injection functions."""

from collections.abc import Awaitable, Callable
from typing import Annotated
from urllib.parse import urlsplit

from fastapi import Depends, Request, Response

from livreo.api.middleware.error_handler import (
    APIError,
    AuthenticationError,
    AuthorizationError,
)
from livreo.core.config import get_settings
from livreo.core.rate_limiter import client_identifier, get_rate_limiter
from livreo.schemas.auth import Role, SessionClaims
from livreo.services.session_token_service import get_session_token_service

# Every payment endpoint limit is counted over ten minutes
RATE_LIMIT_WINDOW_SECONDS = 10 * 60


def get_session_cookie_config() -> dict:
    """Get session cookie configuration from settings."""
    settings = get_settings()
    return {
        "key": settings.session_cookie_name,
        "max_age": settings.auth_token_ttl_seconds,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def get_session_token(request: Request) -> str | None:
    """Extract the session token from the Authorization header or cookie.

    A Bearer token wins over the cookie.

    Args:
        request: FastAPI request object.

    Returns:
        str | None: The session token or None if not present.
    """
    authorization = request.headers.get("authorization", "")
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]

    config = get_session_cookie_config()
    return request.cookies.get(config["key"]) or None


def set_session_cookie(response: Response, token: str) -> None:
    """Set session cookie on response.

    Args:
        response: FastAPI response object.
        token: The session token to set.
    """
    config = get_session_cookie_config()
    response.set_cookie(
        key=config["key"],
        value=token,
        max_age=config["max_age"],
        httponly=config["httponly"],
        secure=config["secure"],
        samesite=config["samesite"],
        path=config["path"],
    )


def clear_session_cookie(response: Response) -> None:
    """Expire the session cookie (Max-Age=0).

    Args:
        response: FastAPI response object.
    """
    config = get_session_cookie_config()
    response.set_cookie(
        key=config["key"],
        value="",
        max_age=0,
        httponly=config["httponly"],
        secure=config["secure"],
        samesite=config["samesite"],
        path=config["path"],
    )


async def get_optional_session(request: Request) -> SessionClaims | None:
    """Claims of the caller's session, or None when there is no valid token."""
    token = get_session_token(request)
    if not token:
        return None
    return get_session_token_service().verify(token)


async def get_current_session(request: Request) -> SessionClaims:
    """Require a valid session token.

    Raises:
        AuthenticationError: 401 if the token is missing, invalid or expired.
    """
    token = get_session_token(request)
    if not token:
        raise AuthenticationError("Authentication required")
    claims = get_session_token_service().verify(token)
    if claims is None:
        raise AuthenticationError("Invalid or expired session")
    return claims


CurrentSession = Annotated[SessionClaims, Depends(get_current_session)]
OptionalSession = Annotated[SessionClaims | None, Depends(get_optional_session)]


def require_role(*roles: Role) -> Callable[..., Awaitable[SessionClaims]]:
    """Dependency factory restricting an endpoint to the given roles.

    Raises:
        AuthorizationError: 403 if the session's role is not allowed.
    """

    async def check_role(session: CurrentSession) -> SessionClaims:
        if session.role not in roles:
            raise AuthorizationError("Forbidden")
        return session

    return check_role


ClientSession = Annotated[SessionClaims, Depends(require_role("client"))]


def rate_limit(
    action: str,
    limit: int,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
) -> Callable[[Request], Awaitable[None]]:
    """Dependency factory admitting at most `limit` calls per client per window.

    Runs before the handler body, so a rejected call has no side effects.

    Raises:
        RateLimitError: 429 once the client is over the limit.
    """

    async def check_rate_limit(request: Request) -> None:
        key = f"{action}:{client_identifier(request.headers)}"
        await get_rate_limiter().admit(key, limit, window_seconds)

    return check_rate_limit


def get_trusted_origin(request: Request) -> str:
    """Origin used to build provider return URLs.

    The configured APP_BASE_URL wins; otherwise the request's own origin,
    which must be https in production.

    Raises:
        APIError: 500 if the configured or derived origin is unusable.
    """
    settings = get_settings()
    if settings.app_base_url:
        parts = urlsplit(settings.app_base_url)
        if not parts.scheme or not parts.netloc:
            raise APIError("Invalid APP_BASE_URL")
        return f"{parts.scheme}://{parts.netloc}"

    origin = f"{request.url.scheme}://{request.url.netloc}"
    if settings.is_production and request.url.scheme != "https":
        raise APIError("Invalid application origin for production")
    return origin


TrustedOrigin = Annotated[str, Depends(get_trusted_origin)]
