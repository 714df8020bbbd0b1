from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import TokenInvalidOrExpiredError
from tenantauth.service.refresh_tokens import parse_ttl
from tenantauth.storage.models import UserCredential

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
MFA_CHALLENGE_TOKEN = "mfa_challenge"

DEFAULT_ACCESS_TTL_SECONDS = 60 * 60
DEFAULT_REFRESH_TTL_SECONDS = 7 * 24 * 60 * 60
MFA_CHALLENGE_TTL_SECONDS = 15 * 60


class TokenIssuer:
    """Mints and verifies domain-scoped HS256 bearer tokens.

    Access, refresh and MFA challenge tokens share one signing secret and the
    same claim layout; ``token_type`` tells them apart so a refresh token can
    never be presented as an access token and vice versa.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 120,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required to issue tokens")
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock
        # Allowance for small clock skew across nodes
        self._leeway_seconds = leeway_seconds

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_ttl(self.settings.access_token_expires_in, DEFAULT_ACCESS_TTL_SECONDS)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_ttl(self.settings.refresh_token_expires_in, DEFAULT_REFRESH_TTL_SECONDS)

    def issue_access_token(self, user: UserCredential, domain_slug: Optional[str] = None) -> str:
        return self._issue(user, domain_slug, ACCESS_TOKEN, self.access_token_ttl_seconds)

    def issue_refresh_token(self, user: UserCredential, domain_slug: Optional[str] = None) -> str:
        return self._issue(user, domain_slug, REFRESH_TOKEN, self.refresh_token_ttl_seconds)

    def issue_challenge_token(self, user: UserCredential, domain_slug: Optional[str] = None) -> str:
        """Short-lived signed token bridging a password check to the second factor."""
        return self._issue(user, domain_slug, MFA_CHALLENGE_TOKEN, MFA_CHALLENGE_TTL_SECONDS)

    def verify(self, token: str, *, token_type: Optional[str] = None) -> dict[str, Any]:
        """Return verified claims or raise TokenInvalidOrExpiredError.

        The concrete failure is logged; callers only ever see the generic error.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            raise TokenInvalidOrExpiredError()
        if token_type and payload.get("token_type") != token_type:
            logger.warning(
                "jwt_wrong_token_type",
                expected_type=token_type,
                actual_type=payload.get("token_type"),
            )
            raise TokenInvalidOrExpiredError()
        if not payload.get("sub") or not payload.get("domain_id"):
            logger.warning("jwt_missing_subject_or_domain")
            raise TokenInvalidOrExpiredError()
        return payload

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Parse claims without verifying anything; for display only."""
        if not isinstance(token, str):
            return None
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _issue(
        self,
        user: UserCredential,
        domain_slug: Optional[str],
        token_type: str,
        ttl_seconds: int,
    ) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "domain_id": user.domain_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if domain_slug:
            payload["domain_slug"] = domain_slug
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.warning("jwt_malformed")
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.warning("jwt_issuer_mismatch")
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            logger.warning("jwt_audience_mismatch")
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway_seconds:
            logger.info("jwt_expired")
            return None
        return payload
