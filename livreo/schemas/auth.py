"""Authentication schemas for session tokens and login."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["client", "admin"]


class SessionClaims(BaseModel):
    """Claims carried by a signed session token.

    Claims are immutable once issued; expiry is the only way a token
    stops being valid.
    """

    model_config = ConfigDict(frozen=True)

    sub: str = Field(description="Subject - the user's ID")
    email: str = Field(description="User's email address")
    role: Role = Field(description="User's role")
    name: str = Field(default="", description="Display name")
    iat: int = Field(description="Issued at timestamp (Unix epoch)")
    exp: int = Field(description="Expiration timestamp (Unix epoch)")

    @property
    def subject_id(self) -> str:
        return self.sub

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class LoginRequest(BaseModel):
    """Request schema for user login."""

    email: str = Field(..., description="User's email address", min_length=3, max_length=255)
    password: str = Field(..., description="User's password", min_length=1, max_length=100)


class LoginResponse(BaseModel):
    """Response schema for user login.

    The token is also set as the session cookie; it is returned so
    non-browser clients can send it as a Bearer token.
    """

    token: str = Field(description="Signed session token")
    expires_in: int = Field(description="Seconds until the token expires")
    user: SessionClaims = Field(description="Claims embedded in the token")


class LogoutResponse(BaseModel):
    """Response schema for logout."""

    message: str = Field(default="Logged out successfully")
