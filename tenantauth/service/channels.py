from __future__ import annotations

import asyncio
import secrets
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from requests.exceptions import RequestException
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.service.errors import BadRequestError, ExternalServiceError
from tenantauth.service.schemas import SentCode
from tenantauth.storage.interfaces import SessionLedger

logger = get_logger(__name__)

DEFAULT_CODE_TTL_SECONDS = 300


def generate_otp() -> str:
    """Six-digit numeric code with no leading zero."""
    return str(100000 + secrets.randbelow(900000))


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmsChannel(Protocol):
    async def send_code(self, domain_id: str, user_id: str, phone: str) -> SentCode:
        ...

    async def verify_code(self, domain_id: str, user_id: str, code: str) -> bool:
        ...


class EmailChannel(Protocol):
    async def send_code(
        self, domain_id: str, user_id: str, email: str, display_name: Optional[str] = None
    ) -> SentCode:
        ...

    async def verify_code(self, domain_id: str, user_id: str, code: str) -> bool:
        ...

    async def send_password_reset(
        self, email: str, token: str, display_name: Optional[str] = None
    ) -> None:
        ...


class _LedgerCodes:
    """One-time codes kept in the session ledger under ``{prefix}:{domain}:{user}:{code}``."""

    def __init__(self, ledger: SessionLedger, prefix: str, ttl_seconds: int) -> None:
        self.ledger = ledger
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def key(self, domain_id: str, user_id: str, code: str) -> str:
        return f"{self.prefix}:{domain_id}:{user_id}:{code}"

    async def issue(self, domain_id: str, user_id: str) -> SentCode:
        code = generate_otp()
        await self.ledger.set_with_ttl(self.key(domain_id, user_id, code), code, self.ttl_seconds)
        return SentCode(code=code, expires_in=self.ttl_seconds)

    async def consume(self, domain_id: str, user_id: str, code: str) -> bool:
        if not code:
            return False
        return await self.ledger.pop(self.key(domain_id, user_id, code)) is not None


class TwilioSmsChannel:
    """SMS one-time codes delivered through Twilio."""

    def __init__(
        self,
        ledger: SessionLedger,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout_seconds: float = 10.0,
        ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
        client: Optional[TwilioClient] = None,
    ) -> None:
        self.codes = _LedgerCodes(ledger, "mfa_sms", ttl_seconds)
        self.from_number = from_number
        self.client = client
        if client is None and account_sid and auth_token and account_sid.startswith("AC") and from_number:
            self.client = TwilioClient(
                account_sid,
                auth_token,
                http_client=TwilioHttpClient(timeout=timeout_seconds),
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.client and self.from_number)

    async def send_code(self, domain_id: str, user_id: str, phone: str) -> SentCode:
        if not self.is_configured:
            raise BadRequestError("SMS service not configured")
        sent = await self.codes.issue(domain_id, user_id)
        minutes = max(1, sent.expires_in // 60)
        try:
            await asyncio.to_thread(
                self.client.messages.create,
                body=f"Your verification code is: {sent.code}. Valid for {minutes} minutes.",
                from_=self.from_number,
                to=phone,
            )
        except (TwilioException, RequestException) as exc:
            await self.codes.ledger.delete(self.codes.key(domain_id, user_id, sent.code))
            logger.error("sms_send_failed", user_id=user_id, error_type=type(exc).__name__)
            raise ExternalServiceError(
                "sms", f"Failed to send SMS: {sanitize_error_message(str(exc))}"
            ) from exc
        logger.info("sms_code_sent", user_id=user_id)
        return sent

    async def verify_code(self, domain_id: str, user_id: str, code: str) -> bool:
        return await self.codes.consume(domain_id, user_id, code)


class SmtpEmailChannel:
    """Email one-time codes and password reset links sent over SMTP.

    When no SMTP host is configured, password reset mails are logged and
    skipped; one-time codes refuse to send since the user could never receive them.
    """

    def __init__(
        self,
        ledger: SessionLedger,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "TenantAuth",
        frontend_url: str = "http://localhost:3000",
        reset_ttl_minutes: int = 30,
        timeout_seconds: float = 10.0,
        ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
    ) -> None:
        self.codes = _LedgerCodes(ledger, "mfa_email", ttl_seconds)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    async def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> None:
        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            await asyncio.to_thread(self._deliver, to_email, msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
            )
            raise ExternalServiceError(
                "email", f"Failed to send email: {sanitize_error_message(str(exc))}"
            ) from exc
        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    async def send_code(
        self, domain_id: str, user_id: str, email: str, display_name: Optional[str] = None
    ) -> SentCode:
        if not self.is_configured:
            raise BadRequestError("Email service not configured")
        sent = await self.codes.issue(domain_id, user_id)
        minutes = max(1, sent.expires_in // 60)
        subject = "Your verification code" + (f" - {display_name}" if display_name else "")
        text_body = f"Your verification code is: {sent.code}. Valid for {minutes} minutes."
        html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h2>Verification code</h2>
    <p>Use the code below to finish signing in{f" to {display_name}" if display_name else ""}:</p>
    <div style="background-color: #f4f4f4; padding: 20px; text-align: center; font-size: 32px; font-weight: bold; letter-spacing: 5px; margin: 20px 0;">
        {sent.code}
    </div>
    <p>This code is valid for {minutes} minutes.</p>
    <p>If you didn't request this code, you can safely ignore this email.</p>
</div>
"""
        try:
            await self._send_email(email, subject, html_body, text_body)
        except ExternalServiceError:
            await self.codes.ledger.delete(self.codes.key(domain_id, user_id, sent.code))
            raise
        return sent

    async def verify_code(self, domain_id: str, user_id: str, code: str) -> bool:
        return await self.codes.consume(domain_id, user_id, code)

    async def send_password_reset(
        self, email: str, token: str, display_name: Optional[str] = None
    ) -> None:
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(email), subject="password_reset")
            return
        reset_url = f"{self.frontend_url}/reset-password?token={token}"
        subject = "Reset your password" + (f" - {display_name}" if display_name else "")
        text_body = f"""Reset your password

We received a request to reset your password{f" for {display_name}" if display_name else ""}. Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h2>Reset your password</h2>
    <p>We received a request to reset your password{f" for {display_name}" if display_name else ""}.</p>
    <p><a href="{reset_url}" style="background-color: #007bff; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px; display: inline-block;">Reset Password</a></p>
    <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>
    <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>
    <p>If you didn't request this, you can safely ignore this email.</p>
</div>
"""
        await self._send_email(email, subject, html_body, text_body)
