"""Signed session token issuance and verification."""

import logging
import time

import jwt
from pydantic import ValidationError as PydanticValidationError

from livreo.core.config import get_settings
from livreo.schemas.auth import Role, SessionClaims

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class SessionTokenService:
    """Issue and verify stateless HS256 session tokens.

    There is no server-side session store: a token stays valid until its
    expiry, whatever happens to the cookie that carried it.
    """

    def __init__(self, secret: str | None = None, ttl_seconds: int | None = None) -> None:
        settings = get_settings()
        if secret is None and not settings.auth_secret:
            logger.warning("AUTH_SECRET is not set; signing session tokens with the development secret")
        self.secret = secret or settings.session_secret
        self.ttl_seconds = ttl_seconds or settings.auth_token_ttl_seconds

    def issue(
        self,
        subject_id: str,
        email: str,
        role: Role,
        display_name: str = "",
        now: int | None = None,
    ) -> str:
        """Sign a token for the given subject.

        Args:
            subject_id: User ID stored in `sub`.
            email: User email.
            role: "client" or "admin".
            display_name: Name shown in the UI.
            now: Issue time override (epoch seconds).

        Returns:
            str: The compact `header.claims.signature` token.
        """
        issued_at = int(time.time()) if now is None else now
        claims = {
            "sub": subject_id,
            "email": email,
            "role": role,
            "name": display_name,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str, now: int | None = None) -> SessionClaims | None:
        """Return the token's claims, or None when it is not acceptable.

        Never raises: a malformed token, a signature mismatch, missing
        claims and `now >= exp` all yield None.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "require": ["sub", "email", "role", "iat", "exp"]},
            )
            claims = SessionClaims.model_validate(payload)
        except jwt.PyJWTError as e:
            logger.debug("Rejected session token: %s", e)
            return None
        except PydanticValidationError:
            logger.debug("Rejected session token with malformed claims")
            return None

        current = int(time.time()) if now is None else now
        if current >= claims.exp:
            return None
        return claims


_session_token_service: SessionTokenService | None = None


def get_session_token_service() -> SessionTokenService:
    """Get or create the shared token service."""
    global _session_token_service
    if _session_token_service is None:
        _session_token_service = SessionTokenService()
    return _session_token_service
