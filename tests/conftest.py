import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; the runtime falls back to the in-memory ledger
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.auth import AuthService  # noqa: E402
from tenantauth.service.channels import generate_otp  # noqa: E402
from tenantauth.service.crypto import SecretCipher  # noqa: E402
from tenantauth.service.mfa import MfaService  # noqa: E402
from tenantauth.service.passwords import PasswordService  # noqa: E402
from tenantauth.service.refresh_tokens import RefreshTokenLedger  # noqa: E402
from tenantauth.service.schemas import SentCode  # noqa: E402
from tenantauth.service.tokens import TokenIssuer  # noqa: E402
from tenantauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_PASSWORD = "ValidPassword123!@#"


class RecordingSmsChannel:
    """Keeps issued codes in memory instead of calling Twilio."""

    def __init__(self):
        self.sent = []
        self._codes = {}

    async def send_code(self, domain_id, user_id, phone):
        code = generate_otp()
        self._codes[(domain_id, user_id, code)] = True
        self.sent.append({"domain_id": domain_id, "user_id": user_id, "phone": phone, "code": code})
        return SentCode(code=code, expires_in=300)

    async def verify_code(self, domain_id, user_id, code):
        return self._codes.pop((domain_id, user_id, code), None) is not None


class RecordingEmailChannel:
    """Keeps issued codes and reset links in memory instead of using SMTP."""

    def __init__(self):
        self.sent = []
        self.resets = []
        self._codes = {}

    async def send_code(self, domain_id, user_id, email, display_name=None):
        code = generate_otp()
        self._codes[(domain_id, user_id, code)] = True
        self.sent.append(
            {"domain_id": domain_id, "user_id": user_id, "email": email, "code": code, "display_name": display_name}
        )
        return SentCode(code=code, expires_in=300)

    async def verify_code(self, domain_id, user_id, code):
        return self._codes.pop((domain_id, user_id, code), None) is not None

    async def send_password_reset(self, email, token, display_name=None):
        self.resets.append({"email": email, "token": token, "display_name": display_name})


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        redis_url="",
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        mfa_encryption_key="0123456789abcdef" * 4,
        google_client_id="google-client",
        google_client_secret="google-secret",
        google_redirect_uri="http://localhost:3000/sso/google/callback",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        microsoft_redirect_uri="http://localhost:3000/sso/microsoft/callback",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def domain(store):
    return store.create_domain("acme", name="Acme Corp")


@pytest.fixture
def other_domain(store):
    return store.create_domain("globex", name="Globex")


@pytest.fixture
def passwords():
    return PasswordService()


@pytest.fixture
def tokens(settings):
    return TokenIssuer(settings)


@pytest.fixture
def refresh_ledger(cache, tokens):
    return RefreshTokenLedger(cache, tokens.refresh_token_ttl_seconds)


@pytest.fixture
def cipher(settings):
    return SecretCipher(settings.mfa_encryption_key)


@pytest.fixture
def sms_channel():
    return RecordingSmsChannel()


@pytest.fixture
def email_channel():
    return RecordingEmailChannel()


@pytest.fixture
def mfa_service(store, cipher, settings, sms_channel, email_channel):
    return MfaService(store, store, store, cipher, settings, sms=sms_channel, email=email_channel)


@pytest.fixture
def auth_service(store, tokens, refresh_ledger, cache, mfa_service, passwords):
    return AuthService(store, store, tokens, refresh_ledger, cache, mfa_service, passwords)


@pytest.fixture
def make_user(store, passwords):
    """Create a user with ``TEST_PASSWORD`` in the given domain."""

    def _make(domain, email="jane@example.com", **kwargs):
        kwargs.setdefault("password_hash", passwords.hash_password(TEST_PASSWORD))
        return store.create(domain.id, email=email, **kwargs)

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
