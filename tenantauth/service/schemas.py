from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Authenticated(BaseModel):
    status: Literal["authenticated"] = "authenticated"
    access_token: str
    refresh_token: str
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    token_type: str = "Bearer"


# Refresh returns the same bundle as a completed login
RefreshResult = Authenticated


class MfaRequired(BaseModel):
    status: Literal["mfa_required"] = "mfa_required"
    challenge_token: str
    available_methods: List[str] = Field(..., min_length=1)
    message: str = "MFA verification required"


LoginResult = Union[Authenticated, MfaRequired]


class MfaSetupResult(BaseModel):
    secret: str
    qr_code: str = Field(..., description="PNG data URI of the provisioning URI")
    backup_codes: List[str]


class SentCode(BaseModel):
    code: str
    expires_in: int


class SsoInitResult(BaseModel):
    auth_url: str
    state: str


class RolesAndPermissions(BaseModel):
    roles: List[str]
    permissions: List[str]


class ResetRequestResult(BaseModel):
    message: str


class ResetResult(BaseModel):
    message: str


class TokenClaims(BaseModel):
    """Verified access-token claims handed to the authorization boundary."""

    model_config = ConfigDict(extra="allow")

    sub: str
    email: Optional[str] = None
    domain_id: str
    domain_slug: Optional[str] = None
    token_type: str
    jti: Optional[str] = None
    iat: Optional[int] = None
    exp: int
