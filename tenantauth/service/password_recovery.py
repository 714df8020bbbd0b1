from __future__ import annotations

import secrets
from typing import Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.channels import EmailChannel
from tenantauth.service.errors import (
    DomainNotFoundOrInactiveError,
    PasswordTooWeakError,
    ResetTokenExpiredError,
    ResetTokenInvalidError,
    ResetTokenUsedError,
    ResetTokenWrongDomainError,
)
from tenantauth.service.passwords import PasswordService
from tenantauth.service.refresh_tokens import RefreshTokenLedger, parse_ttl
from tenantauth.service.schemas import ResetRequestResult, ResetResult
from tenantauth.service.throttle import DomainThrottle
from tenantauth.storage.interfaces import (
    CredentialStore,
    DomainRegistry,
    ResetTokenStore,
    SessionLedger,
)
from tenantauth.storage.models import PasswordResetToken

logger = get_logger(__name__)

DEFAULT_RESET_TTL_SECONDS = 30 * 60
RESET_REQUESTED_MESSAGE = "If the email exists, a recovery link will be sent"
RESET_COMPLETED_MESSAGE = "Password has been reset successfully"


def password_reset_key(domain_id: str, user_id: str, token: str) -> str:
    return f"password_reset:{domain_id}:{user_id}:{token}"


class PasswordRecoveryService:
    """Reset-link issuance and redemption.

    ``request_reset`` answers identically whether or not the address exists so
    the endpoint cannot be used to enumerate accounts.
    """

    def __init__(
        self,
        domains: DomainRegistry,
        credentials: CredentialStore,
        reset_tokens: ResetTokenStore,
        ledger: SessionLedger,
        email: EmailChannel,
        passwords: PasswordService,
        refresh_tokens: RefreshTokenLedger,
        settings: Settings,
        *,
        throttle: Optional[DomainThrottle] = None,
    ) -> None:
        self.domains = domains
        self.credentials = credentials
        self.reset_tokens = reset_tokens
        self.ledger = ledger
        self.email = email
        self.passwords = passwords
        self.refresh_tokens = refresh_tokens
        self.throttle = throttle
        self.ttl_seconds = parse_ttl(
            settings.password_reset_token_expires_in, DEFAULT_RESET_TTL_SECONDS
        )
        self.logger = logger

    async def request_reset(self, domain_id: str, email: str) -> ResetRequestResult:
        domain = self.domains.find_active_by_id(domain_id)
        if not domain:
            raise DomainNotFoundOrInactiveError()
        if self.throttle:
            await self.throttle.hit(domain.id, email)

        result = ResetRequestResult(message=RESET_REQUESTED_MESSAGE)
        user = self.credentials.find_by_email(domain.id, email)
        if not user or not user.is_active:
            self.logger.info("password_reset_skipped", reason="unknown_or_inactive")
            return result

        token = secrets.token_hex(32)
        self.reset_tokens.save_reset_token(
            PasswordResetToken.new(token, user.id, domain.id, self.ttl_seconds)
        )
        await self.ledger.set_with_ttl(
            password_reset_key(domain.id, user.id, token), user.id, self.ttl_seconds
        )
        await self.email.send_password_reset(user.email, token, domain.name)
        self.logger.info("password_reset_requested", user_id=user.id)
        return result

    async def reset_password(self, domain_id: str, token: str, new_password: str) -> ResetResult:
        record = self.reset_tokens.get_reset_token(token) if token else None
        if not record:
            raise ResetTokenInvalidError()
        if record.is_expired:
            raise ResetTokenExpiredError()
        if record.used_at is not None:
            raise ResetTokenUsedError()
        if record.domain_id != domain_id:
            self.logger.warning("password_reset_domain_mismatch", token_id=record.id)
            raise ResetTokenWrongDomainError()

        violations = self.passwords.validate_strength(new_password)
        if violations:
            raise PasswordTooWeakError(violations)

        user = self.credentials.find_by_id(domain_id, record.user_id)
        if not user:
            raise ResetTokenInvalidError()

        # Two concurrent redemptions: only the one that marks the row wins
        if not self.reset_tokens.mark_reset_token_used(record.id):
            raise ResetTokenUsedError()
        self.credentials.update_password_hash(
            domain_id, user.id, self.passwords.hash_password(new_password)
        )
        await self.ledger.pop(password_reset_key(domain_id, user.id, token))
        await self.refresh_tokens.revoke_all(domain_id, user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return ResetResult(message=RESET_COMPLETED_MESSAGE)
