from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries a stable error_code and an HTTP status_code
    hint for whichever transport wraps the services:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Domains and users


class DomainNotFoundOrInactiveError(NotFoundError):
    error_code = "domain_not_found"

    def __init__(self, message: str = "Domain not found or inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserInactiveError(AuthenticationError):
    error_code = "user_inactive"

    def __init__(self, message: str = "User inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundOrInactiveError(AuthenticationError):
    error_code = "user_not_found"

    def __init__(self, message: str = "User not found or inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Tokens


class TokenInvalidOrExpiredError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenDomainMismatchError(TokenInvalidOrExpiredError):
    """The token was minted for a different domain than the request's."""

    error_code = "token_domain_mismatch"

    def __init__(self, message: str = "Token domain mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenInvalidError(AuthenticationError):
    error_code = "refresh_token_invalid"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


# MFA


class MfaNotConfiguredError(BadRequestError):
    error_code = "mfa_not_configured"

    def __init__(self, message: str = "MFA not configured", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaTypeUnsupportedError(BadRequestError):
    error_code = "mfa_type_unsupported"

    def __init__(self, message: str = "Unsupported MFA type", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaCodeInvalidError(AuthenticationError):
    error_code = "mfa_code_invalid"

    def __init__(self, message: str = "Invalid MFA code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PhoneNotRegisteredError(BadRequestError):
    error_code = "phone_not_registered"

    def __init__(self, message: str = "Phone number not registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


# SSO


class SsoNotConfiguredError(BadRequestError):
    error_code = "sso_not_configured"

    def __init__(self, provider: str, **kwargs) -> None:
        super().__init__(f"{provider} SSO not configured", **kwargs)
        self.provider = provider


class SsoStateInvalidOrExpiredError(BadRequestError):
    error_code = "sso_state_invalid"

    def __init__(self, message: str = "Invalid or expired state", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SsoDomainNotResolvedError(BadRequestError):
    error_code = "sso_domain_not_resolved"

    def __init__(
        self, message: str = "Unable to determine domain for user", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


# Passwords and recovery


class PasswordTooWeakError(ValidationError):
    error_code = "password_too_weak"

    def __init__(self, violations: List[str], **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {"violations": list(violations)}
        super().__init__("Password does not meet requirements", detail=detail, **kwargs)
        self.violations = list(violations)


class ResetTokenInvalidError(BadRequestError):
    error_code = "reset_token_invalid"

    def __init__(self, message: str = "Invalid reset token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ResetTokenExpiredError(BadRequestError):
    error_code = "reset_token_expired"

    def __init__(self, message: str = "Reset token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ResetTokenUsedError(BadRequestError):
    error_code = "reset_token_used"

    def __init__(self, message: str = "Reset token already used", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ResetTokenWrongDomainError(BadRequestError):
    error_code = "reset_token_wrong_domain"

    def __init__(self, message: str = "Token does not belong to this domain", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Authorization


class RoleRequiredError(ForbiddenError):
    error_code = "role_required"

    def __init__(self, name: str, **kwargs) -> None:
        super().__init__(f"Role required: {name}", **kwargs)
        self.name = name


class PermissionRequiredError(ForbiddenError):
    error_code = "permission_required"

    def __init__(self, name: str, **kwargs) -> None:
        super().__init__(f"Permission required: {name}", **kwargs)
        self.name = name


# Outbound collaborators


class ExternalServiceError(ServerError):
    """An IdP, SMS or email provider call failed; message is already sanitized."""

    status_code = 502
    error_code = "external_service_error"

    def __init__(self, service: str, message: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.service = service


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DomainNotFoundOrInactiveError",
    "InvalidCredentialsError",
    "UserInactiveError",
    "UserNotFoundOrInactiveError",
    "TokenInvalidOrExpiredError",
    "TokenDomainMismatchError",
    "RefreshTokenInvalidError",
    "MfaNotConfiguredError",
    "MfaTypeUnsupportedError",
    "MfaCodeInvalidError",
    "PhoneNotRegisteredError",
    "SsoNotConfiguredError",
    "SsoStateInvalidOrExpiredError",
    "SsoDomainNotResolvedError",
    "PasswordTooWeakError",
    "ResetTokenInvalidError",
    "ResetTokenExpiredError",
    "ResetTokenUsedError",
    "ResetTokenWrongDomainError",
    "RoleRequiredError",
    "PermissionRequiredError",
    "ExternalServiceError",
]
