"""Tests for the domain-scoped token issuer."""

import pytest

from tenantauth.service.errors import TokenInvalidOrExpiredError
from tenantauth.service.tokens import (
    ACCESS_TOKEN,
    MFA_CHALLENGE_TOKEN,
    REFRESH_TOKEN,
    TokenIssuer,
)


@pytest.fixture
def user(store, domain, make_user):
    return make_user(domain)


class TestIssue:
    def test_access_token_carries_domain_claims(self, tokens, user, domain):
        claims = tokens.verify(tokens.issue_access_token(user, domain.slug))

        assert claims["sub"] == user.id
        assert claims["email"] == user.email
        assert claims["domain_id"] == domain.id
        assert claims["domain_slug"] == "acme"
        assert claims["token_type"] == ACCESS_TOKEN
        assert claims["exp"] - claims["iat"] == 3600

    def test_refresh_token_lifetime_defaults_to_seven_days(self, tokens, user):
        claims = tokens.verify(tokens.issue_refresh_token(user))

        assert claims["token_type"] == REFRESH_TOKEN
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600
        assert "domain_slug" not in claims

    def test_every_token_has_unique_jti(self, tokens, user):
        first = tokens.verify(tokens.issue_access_token(user))
        second = tokens.verify(tokens.issue_access_token(user))

        assert first["jti"] != second["jti"]

    def test_configured_expiry_strings_are_honoured(self, settings, user):
        settings.access_token_expires_in = "15m"
        issuer = TokenIssuer(settings)

        claims = issuer.verify(issuer.issue_access_token(user))

        assert claims["exp"] - claims["iat"] == 900
        assert issuer.access_token_ttl_seconds == 900

    def test_unparseable_expiry_falls_back(self, settings):
        settings.access_token_expires_in = "soon"

        assert TokenIssuer(settings).access_token_ttl_seconds == 3600


class TestVerify:
    def test_wrong_token_type_is_rejected(self, tokens, user):
        refresh = tokens.issue_refresh_token(user)

        with pytest.raises(TokenInvalidOrExpiredError):
            tokens.verify(refresh, token_type=ACCESS_TOKEN)

    def test_challenge_token_is_not_an_access_token(self, tokens, user):
        challenge = tokens.issue_challenge_token(user)

        assert tokens.verify(challenge, token_type=MFA_CHALLENGE_TOKEN)["sub"] == user.id
        with pytest.raises(TokenInvalidOrExpiredError):
            tokens.verify(challenge, token_type=ACCESS_TOKEN)

    def test_tampered_signature_is_rejected(self, tokens, user):
        token = tokens.issue_access_token(user)
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{'A' * len(signature)}"

        with pytest.raises(TokenInvalidOrExpiredError):
            tokens.verify(forged)

    def test_other_secret_is_rejected(self, settings, tokens, user):
        settings_copy = settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-123"})
        foreign = TokenIssuer(settings_copy).issue_access_token(user)

        with pytest.raises(TokenInvalidOrExpiredError):
            tokens.verify(foreign)

    def test_expired_token_is_rejected_after_leeway(self, settings, user):
        now = [1_700_000_000.0]
        issuer = TokenIssuer(settings, clock=lambda: now[0])
        token = issuer.issue_access_token(user)

        now[0] += 3600 + 60
        assert issuer.verify(token)["sub"] == user.id

        now[0] += 120
        with pytest.raises(TokenInvalidOrExpiredError):
            issuer.verify(token)

    def test_wrong_audience_is_rejected(self, settings, tokens, user):
        other = TokenIssuer(settings.model_copy(update={"jwt_audience": "someone-else"}))

        with pytest.raises(TokenInvalidOrExpiredError):
            tokens.verify(other.issue_access_token(user))

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_rejected(self, tokens, garbage):
        with pytest.raises(TokenInvalidOrExpiredError):
            tokens.verify(garbage)

    def test_decode_reads_claims_without_verifying(self, tokens, user):
        token = tokens.issue_access_token(user)

        assert tokens.decode(token)["sub"] == user.id
        assert tokens.decode("garbage") is None
