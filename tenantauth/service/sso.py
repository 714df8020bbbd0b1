from __future__ import annotations

import base64
import json
import secrets
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.service.auth import AuthService
from tenantauth.service.errors import (
    BadRequestError,
    ConflictError,
    DomainNotFoundOrInactiveError,
    ExternalServiceError,
    SsoDomainNotResolvedError,
    SsoNotConfiguredError,
    SsoStateInvalidOrExpiredError,
    UserInactiveError,
)
from tenantauth.service.schemas import Authenticated, SsoInitResult
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.interfaces import CredentialStore, DomainRegistry, SessionLedger
from tenantauth.storage.models import TenantDomain, UserCredential

logger = get_logger(__name__)

SSO_STATE_TTL_SECONDS = 600

GOOGLE = "google"
MICROSOFT = "microsoft"

SSO_PROVIDERS: dict[str, dict[str, str]] = {
    GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    MICROSOFT: {
        "auth_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}


def sso_state_key(state: str) -> str:
    return f"sso_state:{state}"


@dataclass
class SsoProfile:
    """Identity extracted from a provider's profile response."""

    email: str
    full_name: Optional[str]
    is_verified: bool
    tenant_id: Optional[str] = None


def _unverified_claims(id_token: Optional[str]) -> dict[str, Any]:
    # Routing hints such as ``tid`` only; never an authorization input
    if not id_token or id_token.count(".") != 2:
        return {}
    payload = id_token.split(".")[1]
    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        claims = json.loads(raw)
    except (ValueError, TypeError):
        return {}
    return claims if isinstance(claims, dict) else {}


def slug_candidates(email: str) -> list[str]:
    """Domain slugs to try for an email address, most specific first.

    ``jane@acme.co`` yields ``acme.co``, ``acme-co`` and ``acme``.
    """
    _, sep, email_domain = email.rpartition("@")
    email_domain = email_domain.strip().lower()
    if not sep or not email_domain:
        return []
    candidates = [email_domain, email_domain.replace(".", "-"), email_domain.split(".")[0]]
    ordered: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in ordered:
            ordered.append(candidate)
    return ordered


class SsoService:
    """Google and Microsoft sign-in with tenant discovery and JIT provisioning."""

    def __init__(
        self,
        domains: DomainRegistry,
        credentials: CredentialStore,
        ledger: SessionLedger,
        auth: AuthService,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.domains = domains
        self.credentials = credentials
        self.ledger = ledger
        self.auth = auth
        self.settings = settings
        self.transport = transport
        self.logger = logger

    def _get_credentials(self, provider: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if provider == GOOGLE:
            return (
                self.settings.google_client_id,
                self.settings.google_client_secret,
                self.settings.google_redirect_uri,
            )
        if provider == MICROSOFT:
            return (
                self.settings.microsoft_client_id,
                self.settings.microsoft_client_secret,
                self.settings.microsoft_redirect_uri,
            )
        return None, None, None

    def _require_provider(self, provider: str) -> tuple[str, str, str]:
        if provider not in SSO_PROVIDERS:
            raise BadRequestError(f"Unsupported SSO provider: {provider}")
        client_id, client_secret, redirect_uri = self._get_credentials(provider)
        if not client_id or not client_secret or not redirect_uri:
            self.logger.warning("sso_not_configured", provider=provider)
            raise SsoNotConfiguredError(provider.capitalize())
        return client_id, client_secret, redirect_uri

    def _provider_url(self, provider: str, name: str) -> str:
        url = SSO_PROVIDERS[provider][name]
        if provider == MICROSOFT:
            url = url.format(tenant=self.settings.microsoft_tenant_id or "common")
        return url

    async def initiate(self, provider: str, domain_id: Optional[str] = None) -> SsoInitResult:
        client_id, _, redirect_uri = self._require_provider(provider)

        state = secrets.token_hex(32)
        await self.ledger.set_with_ttl(
            sso_state_key(state),
            json.dumps({"provider": provider, "domain_id": domain_id}),
            SSO_STATE_TTL_SECONDS,
        )

        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SSO_PROVIDERS[provider]["scope"],
            "state": state,
        }
        if provider == GOOGLE:
            params["access_type"] = "offline"
            params["prompt"] = "consent"

        auth_url = f"{self._provider_url(provider, 'auth_url')}?{urlencode(params)}"
        self.logger.info("sso_initiated", provider=provider, domain_id=domain_id)
        return SsoInitResult(auth_url=auth_url, state=state)

    async def _consume_state(self, provider: str, state: str) -> Optional[str]:
        raw = await self.ledger.pop(sso_state_key(state)) if state else None
        if raw is None:
            raise SsoStateInvalidOrExpiredError()
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise SsoStateInvalidOrExpiredError() from exc
        if not isinstance(data, dict) or data.get("provider") != provider:
            self.logger.warning("sso_state_provider_mismatch", provider=provider)
            raise SsoStateInvalidOrExpiredError()
        return data.get("domain_id")

    async def _exchange_code(self, provider: str, code: str) -> SsoProfile:
        client_id, client_secret, redirect_uri = self._require_provider(provider)
        token_data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if provider == MICROSOFT:
            token_data["scope"] = SSO_PROVIDERS[provider]["scope"]

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.external_timeout_seconds,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                token_response = await client.post(
                    self._provider_url(provider, "token_url"),
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()

                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    self.logger.error("sso_no_access_token", provider=provider)
                    raise ExternalServiceError(provider, f"{provider} did not return an access token")

                userinfo_response = await client.get(
                    SSO_PROVIDERS[provider]["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "sso_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise ExternalServiceError(
                provider,
                f"{provider} authentication failed: "
                f"{sanitize_error_message(exc.response.text or str(exc))}",
            ) from exc
        except httpx.HTTPError as exc:
            self.logger.error("sso_exchange_error", provider=provider, error=str(exc))
            raise ExternalServiceError(
                provider, f"{provider} authentication failed: {sanitize_error_message(str(exc))}"
            ) from exc
        except ValueError as exc:
            self.logger.error("sso_response_parse_error", provider=provider, error=str(exc))
            raise ExternalServiceError(provider, f"{provider} returned an invalid response") from exc

        if not isinstance(userinfo, dict):
            raise ExternalServiceError(provider, f"{provider} returned an invalid profile")

        if provider == GOOGLE:
            return self._google_profile(userinfo)
        return self._microsoft_profile(userinfo, token_result.get("id_token"))

    @staticmethod
    def _google_profile(userinfo: dict[str, Any]) -> SsoProfile:
        email = userinfo.get("email")
        if not email:
            raise BadRequestError("Email not found in Google profile")
        return SsoProfile(
            email=email,
            full_name=userinfo.get("name"),
            is_verified=bool(userinfo.get("verified_email", False)),
        )

    @staticmethod
    def _microsoft_profile(userinfo: dict[str, Any], id_token: Optional[str]) -> SsoProfile:
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        if not email:
            raise BadRequestError("Email not found in Microsoft profile")
        full_name = userinfo.get("displayName")
        if not full_name:
            parts = [userinfo.get("givenName"), userinfo.get("surname")]
            full_name = " ".join(p for p in parts if p) or None
        tenant_id = userinfo.get("tenantId") or _unverified_claims(id_token).get("tid")
        return SsoProfile(email=email, full_name=full_name, is_verified=True, tenant_id=tenant_id)

    def _discover_domain(
        self, provider: str, profile: SsoProfile, state_domain_id: Optional[str]
    ) -> TenantDomain:
        if state_domain_id:
            domain = self.domains.find_active_by_id(state_domain_id)
            if not domain:
                raise DomainNotFoundOrInactiveError()
            return domain

        if provider == MICROSOFT and profile.tenant_id:
            domain = self.domains.find_active_by_external_tenant_id(profile.tenant_id)
            if domain:
                return domain
        elif provider == GOOGLE:
            for slug in slug_candidates(profile.email):
                domain = self.domains.find_active_by_slug(slug)
                if domain:
                    return domain

        self.logger.warning("sso_domain_not_resolved", provider=provider)
        raise SsoDomainNotResolvedError()

    def _provision_user(self, domain: TenantDomain, profile: SsoProfile) -> UserCredential:
        user = self.credentials.find_by_email(domain.id, profile.email)
        if not user:
            try:
                user = self.credentials.create(
                    domain.id,
                    email=profile.email,
                    password_hash=None,
                    full_name=profile.full_name,
                    is_verified=profile.is_verified,
                )
            except ConstraintViolation as exc:
                # A concurrent callback created the account first
                user = self.credentials.find_by_email(domain.id, profile.email)
                if not user:
                    raise ConflictError(
                        "This email address is already in use on this domain.", detail=exc.detail
                    ) from exc
                self.logger.info("sso_user_provision_raced", user_id=user.id)
                return user
            self.logger.info("sso_user_provisioned", user_id=user.id)
            return user
        # Verification only ever moves from false to true
        if profile.is_verified and not user.is_verified:
            self.credentials.set_verified(domain.id, user.id, True)
            user.is_verified = True
        return user

    async def handle_callback(self, provider: str, code: str, state: str) -> Authenticated:
        if provider not in SSO_PROVIDERS:
            raise BadRequestError(f"Unsupported SSO provider: {provider}")
        state_domain_id = await self._consume_state(provider, state)
        profile = await self._exchange_code(provider, code)
        domain = self._discover_domain(provider, profile, state_domain_id)
        user = self._provision_user(domain, profile)
        if not user.is_active:
            raise UserInactiveError()
        result = await self.auth.complete_login(user, domain)
        self.logger.info("sso_login_succeeded", provider=provider, user_id=user.id)
        return result
