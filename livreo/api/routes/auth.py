"""Authentication API routes."""

from fastapi import APIRouter, Depends, Response

from livreo.api.deps import (
    CurrentSession,
    clear_session_cookie,
    rate_limit,
    set_session_cookie,
)
from livreo.core.config import get_settings
from livreo.schemas.auth import LoginRequest, LoginResponse, LogoutResponse, SessionClaims
from livreo.services.auth_service import AuthService

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Log in",
    description="Check email/password, set the session cookie and return the session token.",
    dependencies=[Depends(rate_limit("auth:login", limit=10))],
)
async def login(data: LoginRequest, response: Response) -> LoginResponse:
    """Log a user in.

    Args:
        data: Login credentials.
        response: Response the session cookie is set on.

    Returns:
        LoginResponse: Token, lifetime and claims.

    Raises:
        AuthenticationError: 401 if the credentials are rejected.
    """
    service = AuthService()
    token, claims = await service.login(email=data.email, password=data.password)
    set_session_cookie(response, token)
    return LoginResponse(
        token=token,
        expires_in=get_settings().auth_token_ttl_seconds,
        user=claims,
    )


@router.post(
    "/logout",
    response_model=LogoutResponse,
    summary="Log out",
    description="Clear the session cookie. Bearer tokens stay valid until they expire.",
)
async def logout(response: Response) -> LogoutResponse:
    clear_session_cookie(response)
    return LogoutResponse()


@router.get(
    "/me",
    response_model=SessionClaims,
    summary="Current session",
    description="Return the claims of the caller's session token.",
)
async def me(session: CurrentSession) -> SessionClaims:
    return session
