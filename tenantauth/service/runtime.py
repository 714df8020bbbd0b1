from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthService
from tenantauth.service.channels import SmtpEmailChannel, TwilioSmsChannel
from tenantauth.service.crypto import SecretCipher
from tenantauth.service.mfa import MfaService
from tenantauth.service.password_recovery import (
    DEFAULT_RESET_TTL_SECONDS,
    PasswordRecoveryService,
)
from tenantauth.service.passwords import PasswordService
from tenantauth.service.rbac import RbacService
from tenantauth.service.refresh_tokens import RefreshTokenLedger, parse_ttl
from tenantauth.service.sso import SsoService
from tenantauth.service.throttle import DomainThrottle
from tenantauth.service.tokens import TokenIssuer
from tenantauth.storage.memory import MemoryCache, MemoryStore
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired service instances for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            if not self.settings.use_memory_store:
                raise RuntimeError(
                    "No durable store configured; pass a store to Runtime or set USE_MEMORY_STORE=true."
                )
            store = MemoryStore()
        self.store = store
        logger.info("runtime_store_initialized", store_type=type(store).__name__)

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.external_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh tokens, MFA challenges, SSO state and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and one-time "
                    "tokens are in-memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        settings = self.settings
        self.passwords = PasswordService()
        self.tokens = TokenIssuer(settings)
        self.refresh_tokens = RefreshTokenLedger(
            self.cache, self.tokens.refresh_token_ttl_seconds
        )
        self.cipher = SecretCipher(settings.mfa_encryption_key)

        self.sms = TwilioSmsChannel(
            self.cache,
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            timeout_seconds=settings.external_timeout_seconds,
            ttl_seconds=settings.otp_ttl_seconds,
        )
        reset_ttl = parse_ttl(settings.password_reset_token_expires_in, DEFAULT_RESET_TTL_SECONDS)
        self.email = SmtpEmailChannel(
            self.cache,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
            reset_ttl_minutes=max(1, reset_ttl // 60),
            timeout_seconds=settings.external_timeout_seconds,
            ttl_seconds=settings.otp_ttl_seconds,
        )

        self.mfa = MfaService(
            self.store,
            self.store,
            self.store,
            self.cipher,
            settings,
            sms=self.sms,
            email=self.email,
        )
        self.login_throttle = DomainThrottle(
            self.cache,
            name="login",
            limit=settings.login_rate_limit,
            window_seconds=parse_ttl(settings.login_rate_window, 15 * 60),
        )
        self.reset_throttle = DomainThrottle(
            self.cache,
            name="password_reset",
            limit=settings.reset_rate_limit,
            window_seconds=parse_ttl(settings.reset_rate_window, 60 * 60),
        )
        self.auth = AuthService(
            self.store,
            self.store,
            self.tokens,
            self.refresh_tokens,
            self.cache,
            self.mfa,
            self.passwords,
            login_throttle=self.login_throttle,
        )
        self.sso = SsoService(self.store, self.store, self.cache, self.auth, settings)
        self.rbac = RbacService(self.store, self.store)
        self.recovery = PasswordRecoveryService(
            self.store,
            self.store,
            self.store,
            self.cache,
            self.email,
            self.passwords,
            self.refresh_tokens,
            settings,
            throttle=self.reset_throttle,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
