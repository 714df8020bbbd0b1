"""Tests for log redaction and error sanitizing."""

from tenantauth.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_secrets_and_contact_details():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "jane@example.com",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "code": "123",
            "user_id": "u-1",
            "mfa_type": "totp",
            "revoked_count": 3,
        },
    )

    assert event["email"] == "ja***om"
    assert event["refresh_token"].startswith("ey***")
    assert event["code"] == "***"
    assert event["user_id"] == "u-1"
    assert event["mfa_type"] == "totp"
    assert event["revoked_count"] == 3


def test_sanitize_removes_credentials():
    message = sanitize_error_message("request failed: client_secret=abc123 Bearer eyJabc.def")

    assert "abc123" not in message
    assert "eyJabc" not in message
    assert "request failed" in message


def test_sanitize_truncates_and_handles_empty():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 500


def test_correlation_id():
    cid = set_correlation_id()

    assert get_correlation_id() == cid
    assert set_correlation_id("fixed") == "fixed"
