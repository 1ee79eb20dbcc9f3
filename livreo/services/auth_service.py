"""Authentication business logic service."""

import logging
from typing import Any

from starlette.concurrency import run_in_threadpool

from livreo.api.middleware.error_handler import AuthenticationError
from livreo.core.supabase import create_auth_client, execute, get_supabase_client
from livreo.schemas.auth import SessionClaims
from livreo.services.session_token_service import SessionTokenService, get_session_token_service

logger = logging.getLogger(__name__)

ROLES = ("client", "admin")


class AuthService:
    """Check credentials and issue session tokens."""

    def __init__(self, token_service: SessionTokenService | None = None) -> None:
        """Initialize auth service.

        Credential checks go through a fresh isolated Supabase client so
        signing a user in never touches the shared client's headers.
        """
        self.client = get_supabase_client()
        self.token_service = token_service or get_session_token_service()

    async def login(self, email: str, password: str) -> tuple[str, SessionClaims]:
        """Verify email/password and issue a session token.

        Args:
            email: User's email address.
            password: User's password.

        Returns:
            tuple: (token, claims).

        Raises:
            AuthenticationError: If the credentials are rejected.
        """
        user_id = await self._check_credentials(email, password)
        profile = await self._get_profile(user_id)

        role = profile.get("role") if profile.get("role") in ROLES else "client"
        display_name = profile.get("display_name") or email.split("@")[0]

        token = self.token_service.issue(
            subject_id=user_id,
            email=profile.get("email") or email,
            role=role,
            display_name=display_name,
        )
        claims = self.token_service.verify(token)
        if claims is None:
            raise AuthenticationError("Could not issue session")

        logger.info("User %s logged in (role=%s)", user_id, role)
        return token, claims

    async def _check_credentials(self, email: str, password: str) -> str:
        auth_client = create_auth_client()
        try:
            response = await run_in_threadpool(
                auth_client.auth.sign_in_with_password,
                {"email": email, "password": password},
            )
        except Exception as e:
            logger.warning("Login failed for %s: %s", email, str(e))
            raise AuthenticationError("Invalid email or password") from e

        if not response or not response.user:
            raise AuthenticationError("Invalid email or password")
        return str(response.user.id)

    async def _get_profile(self, user_id: str) -> dict[str, Any]:
        response = await execute(
            self.client.table("profiles")
            .select("id, email, display_name, role")
            .eq("id", user_id)
            .maybe_single()
        )
        return response.data if response and response.data else {}
