from __future__ import annotations

import json
from typing import Optional, Union

from tenantauth.logging import get_logger
from tenantauth.service.domain_context import DomainContext, ensure_same_domain
from tenantauth.service.errors import (
    ConflictError,
    DomainNotFoundOrInactiveError,
    InvalidCredentialsError,
    MfaCodeInvalidError,
    PasswordTooWeakError,
    RefreshTokenInvalidError,
    TokenDomainMismatchError,
    TokenInvalidOrExpiredError,
    UserInactiveError,
    UserNotFoundOrInactiveError,
)
from tenantauth.service.mfa import MfaService
from tenantauth.service.passwords import PasswordService
from tenantauth.service.refresh_tokens import RefreshTokenLedger
from tenantauth.service.schemas import Authenticated, LoginResult, MfaRequired, TokenClaims
from tenantauth.service.throttle import DomainThrottle
from tenantauth.service.tokens import (
    ACCESS_TOKEN,
    MFA_CHALLENGE_TOKEN,
    MFA_CHALLENGE_TTL_SECONDS,
    REFRESH_TOKEN,
    TokenIssuer,
)
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.interfaces import CredentialStore, DomainRegistry, SessionLedger
from tenantauth.storage.models import MfaType, TenantDomain, UserCredential

logger = get_logger(__name__)


def mfa_challenge_key(domain_id: str, user_id: str, token: str) -> str:
    return f"mfa_challenge:{domain_id}:{user_id}:{token}"


class AuthService:
    """Login, MFA challenge, refresh rotation and logout for one or many domains.

    Every flow is scoped by the domain id the caller supplies; tokens carry
    their domain and are rejected anywhere else.
    """

    def __init__(
        self,
        domains: DomainRegistry,
        credentials: CredentialStore,
        tokens: TokenIssuer,
        refresh_tokens: RefreshTokenLedger,
        ledger: SessionLedger,
        mfa: MfaService,
        passwords: PasswordService,
        *,
        login_throttle: Optional[DomainThrottle] = None,
    ) -> None:
        self.domains = domains
        self.credentials = credentials
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.ledger = ledger
        self.mfa = mfa
        self.passwords = passwords
        self.login_throttle = login_throttle
        self.logger = logger

    def _require_domain(self, domain_id: str) -> TenantDomain:
        domain = self.domains.find_active_by_id(domain_id)
        if not domain:
            raise DomainNotFoundOrInactiveError()
        return domain

    async def register(
        self,
        domain_id: str,
        email: str,
        password: str,
        *,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> UserCredential:
        self._require_domain(domain_id)
        violations = self.passwords.validate_strength(password)
        if violations:
            raise PasswordTooWeakError(violations)
        email = email.strip()
        if self.credentials.find_by_email(domain_id, email):
            raise ConflictError("This email address is already in use on this domain.")
        try:
            user = self.credentials.create(
                domain_id,
                email=email,
                password_hash=self.passwords.hash_password(password),
                full_name=full_name,
                phone=phone,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "This email address is already in use on this domain.", detail=exc.detail
            ) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def complete_login(self, user: UserCredential, domain: TenantDomain) -> Authenticated:
        """Record the login and hand out a fresh access/refresh pair."""
        self.credentials.update_last_login(domain.id, user.id)
        access_token = self.tokens.issue_access_token(user, domain.slug)
        refresh_token = self.tokens.issue_refresh_token(user, domain.slug)
        await self.refresh_tokens.store(domain.id, user.id, refresh_token)
        return Authenticated(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_token_ttl_seconds,
        )

    async def login(self, domain_id: str, email: str, password: str) -> LoginResult:
        domain = self._require_domain(domain_id)
        if self.login_throttle:
            await self.login_throttle.hit(domain.id, email)

        user = self.credentials.find_by_email(domain.id, email)
        if not user:
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_failed", user_id=user.id, reason="inactive")
            raise UserInactiveError()
        if not user.password_hash or not self.passwords.verify_password(
            password, user.password_hash
        ):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentialsError()

        if self.login_throttle:
            await self.login_throttle.reset(domain.id, email)

        if user.mfa_enabled:
            challenge_token = self.tokens.issue_challenge_token(user, domain.slug)
            await self.ledger.set_with_ttl(
                mfa_challenge_key(domain.id, user.id, challenge_token),
                json.dumps({"user_id": user.id, "domain_id": domain.id}),
                MFA_CHALLENGE_TTL_SECONDS,
            )
            methods = await self.mfa.available_methods(domain.id, user.id)
            self.logger.info("mfa_challenge_issued", user_id=user.id)
            return MfaRequired(
                challenge_token=challenge_token,
                available_methods=methods,
                message="MFA is required. Please provide the MFA code.",
            )

        result = await self.complete_login(user, domain)
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    async def verify_mfa_challenge(
        self,
        challenge_token: str,
        code: str,
        mfa_type: Union[MfaType, str] = MfaType.TOTP,
    ) -> Authenticated:
        claims = self.tokens.verify(challenge_token, token_type=MFA_CHALLENGE_TOKEN)
        domain_id, user_id = claims["domain_id"], claims["sub"]
        key = mfa_challenge_key(domain_id, user_id, challenge_token)

        if await self.ledger.get(key) is None:
            raise TokenInvalidOrExpiredError("MFA token invalid or expired")

        # Account state is checked before any code is spent
        user = self.credentials.find_by_id(domain_id, user_id)
        if not user or not user.is_active:
            raise UserNotFoundOrInactiveError()
        domain = self._require_domain(domain_id)

        # A wrong code leaves the challenge in place so the user can retry
        if not await self.mfa.verify(domain_id, user_id, code, mfa_type):
            self.logger.info("mfa_challenge_rejected", user_id=user_id)
            raise MfaCodeInvalidError()

        # Only the caller that removes the record may finish the login
        if await self.ledger.pop(key) is None:
            raise TokenInvalidOrExpiredError("MFA token invalid or expired")

        result = await self.complete_login(user, domain)
        self.logger.info("mfa_challenge_passed", user_id=user.id)
        return result

    async def refresh(self, domain_id: str, refresh_token: str) -> Authenticated:
        claims = self.tokens.verify(refresh_token, token_type=REFRESH_TOKEN)
        if claims["domain_id"] != domain_id:
            self.logger.warning("refresh_domain_mismatch")
            raise TokenDomainMismatchError("Token does not belong to this domain")
        user_id = claims["sub"]
        if not await self.refresh_tokens.validate(domain_id, user_id, refresh_token):
            raise RefreshTokenInvalidError("Refresh token invalid or expired")

        user = self.credentials.find_by_id(domain_id, user_id)
        if not user or not user.is_active:
            raise UserNotFoundOrInactiveError()
        domain = self._require_domain(domain_id)

        access_token = self.tokens.issue_access_token(user, domain.slug)
        new_refresh_token = self.tokens.issue_refresh_token(user, domain.slug)
        # Rotation: the presented token is claimed atomically so it works once
        if not await self.refresh_tokens.consume(domain_id, user_id, refresh_token):
            raise RefreshTokenInvalidError("Refresh token invalid or expired")
        await self.refresh_tokens.store(domain_id, user.id, new_refresh_token)
        self.logger.info("refresh_rotated", user_id=user.id)
        return Authenticated(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_in=self.tokens.access_token_ttl_seconds,
        )

    async def logout(
        self, domain_id: str, user_id: str, refresh_token: Optional[str] = None
    ) -> None:
        if refresh_token:
            await self.refresh_tokens.revoke(domain_id, user_id, refresh_token)
        else:
            await self.refresh_tokens.revoke_all(domain_id, user_id)
        self.logger.info("logout", user_id=user_id, all_sessions=refresh_token is None)

    async def authenticate(self, context: DomainContext, access_token: str) -> TokenClaims:
        """Verify a bearer token for a request already bound to a domain."""
        claims = self.tokens.verify(access_token, token_type=ACCESS_TOKEN)
        ensure_same_domain(context, claims)
        return TokenClaims(**claims)
