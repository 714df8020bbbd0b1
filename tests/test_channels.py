"""Tests for the Twilio SMS and SMTP email delivery channels."""

import smtplib

import pytest
from requests.exceptions import ConnectTimeout
from twilio.base.exceptions import TwilioException

from tenantauth.service import channels
from tenantauth.service.channels import (
    SmtpEmailChannel,
    TwilioSmsChannel,
    generate_otp,
    redact_email,
)
from tenantauth.service.errors import BadRequestError, ExternalServiceError


class _FakeMessages:
    def __init__(self, error=None):
        self.error = error
        self.created = []

    def create(self, **kwargs):
        if self.error:
            raise self.error
        self.created.append(kwargs)


class _FakeTwilioClient:
    def __init__(self, error=None):
        self.messages = _FakeMessages(error)


class _FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sent = []
        self.logged_in = None
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        if _FakeSMTP.fail_with:
            raise _FakeSMTP.fail_with
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    _FakeSMTP.instances = []
    _FakeSMTP.fail_with = None
    monkeypatch.setattr(channels.smtplib, "SMTP", _FakeSMTP)
    return _FakeSMTP


def _email_channel(cache, **overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
        frontend_url="https://app.example.com/",
    )
    options.update(overrides)
    return SmtpEmailChannel(cache, **options)


def test_generate_otp_is_six_digits():
    for _ in range(50):
        code = generate_otp()
        assert len(code) == 6 and code.isdigit() and code[0] != "0"


def test_redact_email():
    assert redact_email("jane@example.com") == "ja***@example.com"
    assert redact_email("nope") == "redacted"


class TestTwilioSmsChannel:
    async def test_send_and_verify(self, cache):
        client = _FakeTwilioClient()
        channel = TwilioSmsChannel(cache, from_number="+15550000000", client=client)

        sent = await channel.send_code("d1", "u1", "+15555550100")

        message = client.messages.created[0]
        assert message["to"] == "+15555550100"
        assert message["from_"] == "+15550000000"
        assert sent.code in message["body"]
        assert await cache.get(f"mfa_sms:d1:u1:{sent.code}") == sent.code
        assert await channel.verify_code("d1", "u1", sent.code)
        assert not await channel.verify_code("d1", "u1", sent.code)

    async def test_code_is_scoped_to_domain_and_user(self, cache):
        channel = TwilioSmsChannel(cache, from_number="+15550000000", client=_FakeTwilioClient())
        sent = await channel.send_code("d1", "u1", "+15555550100")

        assert not await channel.verify_code("d2", "u1", sent.code)
        assert not await channel.verify_code("d1", "u2", sent.code)

    async def test_unconfigured(self, cache):
        channel = TwilioSmsChannel(cache, account_sid="not-a-sid", auth_token="x", from_number="+1")

        assert not channel.is_configured
        with pytest.raises(BadRequestError):
            await channel.send_code("d1", "u1", "+15555550100")

    async def test_provider_failure_discards_code(self, cache):
        client = _FakeTwilioClient(error=TwilioException("auth_token=abc123 rejected"))
        channel = TwilioSmsChannel(cache, from_number="+15550000000", client=client)

        with pytest.raises(ExternalServiceError) as exc_info:
            await channel.send_code("d1", "u1", "+15555550100")

        assert exc_info.value.service == "sms"
        assert "abc123" not in str(exc_info.value)
        assert await cache.scan_by_prefix("mfa_sms:d1:u1:") == []

    async def test_transport_timeout_discards_code(self, cache):
        client = _FakeTwilioClient(error=ConnectTimeout("connect timed out"))
        channel = TwilioSmsChannel(cache, from_number="+15550000000", client=client)

        with pytest.raises(ExternalServiceError) as exc_info:
            await channel.send_code("d1", "u1", "+15555550100")

        assert exc_info.value.service == "sms"
        assert isinstance(exc_info.value.__cause__, ConnectTimeout)
        assert await cache.scan_by_prefix("mfa_sms:d1:u1:") == []


class TestSmtpEmailChannel:
    async def test_send_code(self, cache, fake_smtp):
        channel = _email_channel(cache)

        sent = await channel.send_code("d1", "u1", "jane@example.com", "Acme Corp")

        server = fake_smtp.instances[0]
        assert server.host == "smtp.example.com"
        assert server.timeout == 10.0
        assert server.logged_in == ("mailer", "pw")
        from_addr, to_addr, message = server.sent[0]
        assert from_addr == "noreply@example.com"
        assert to_addr == "jane@example.com"
        assert "Acme Corp" in message
        assert await channel.verify_code("d1", "u1", sent.code)

    async def test_send_code_requires_configuration(self, cache):
        channel = SmtpEmailChannel(cache)

        with pytest.raises(BadRequestError):
            await channel.send_code("d1", "u1", "jane@example.com")

    async def test_password_reset_link(self, cache, fake_smtp):
        channel = _email_channel(cache)

        await channel.send_password_reset("jane@example.com", "tok123", "Acme Corp")

        message = fake_smtp.instances[0].sent[0][2]
        assert "https://app.example.com/reset-password?token=tok123" in message

    async def test_password_reset_skipped_when_unconfigured(self, cache, fake_smtp):
        channel = SmtpEmailChannel(cache)

        await channel.send_password_reset("jane@example.com", "tok123")

        assert fake_smtp.instances == []

    async def test_smtp_failure(self, cache, fake_smtp):
        fake_smtp.fail_with = smtplib.SMTPException("550 mailbox unavailable")
        channel = _email_channel(cache)

        with pytest.raises(ExternalServiceError) as exc_info:
            await channel.send_code("d1", "u1", "jane@example.com")

        assert exc_info.value.service == "email"
        assert await cache.scan_by_prefix("mfa_email:d1:u1:") == []
