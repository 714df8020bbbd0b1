from __future__ import annotations

import base64
import secrets
from io import BytesIO
from typing import List, Optional, Union

import pyotp
import qrcode

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.channels import EmailChannel, SmsChannel
from tenantauth.service.crypto import SecretCipher, SecretDecryptionError
from tenantauth.service.errors import (
    MfaCodeInvalidError,
    MfaNotConfiguredError,
    MfaTypeUnsupportedError,
    NotFoundError,
    PhoneNotRegisteredError,
    ServerError,
)
from tenantauth.service.schemas import MfaSetupResult, SentCode
from tenantauth.storage.interfaces import CredentialStore, DomainRegistry, MfaStore
from tenantauth.storage.models import BackupCode, MfaMethod, MfaType, UserCredential

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10
BACKUP_CODE_DIGITS = 8
# Accept codes from two 30-second steps either side of now
TOTP_VALID_WINDOW = 2


def coerce_mfa_type(value: Union[MfaType, str, None]) -> MfaType:
    if isinstance(value, MfaType):
        return value
    try:
        return MfaType(str(value or "").lower())
    except ValueError:
        raise MfaTypeUnsupportedError(f"Unsupported MFA type: {value}") from None


def generate_backup_code() -> str:
    return str(secrets.randbelow(10**BACKUP_CODE_DIGITS)).zfill(BACKUP_CODE_DIGITS)


def render_qr_data_uri(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class MfaService:
    """TOTP enrollment, second-factor verification and OTP delivery.

    A method moves from pending (created by ``setup``) to primary (after a
    successful ``enable``); ``disable`` removes every method for the user.
    Secrets and backup codes are sealed with AES-GCM; backup codes also carry
    a keyed hash so a code can be claimed atomically without re-encrypting
    the whole set.
    """

    def __init__(
        self,
        store: MfaStore,
        credentials: CredentialStore,
        domains: DomainRegistry,
        cipher: SecretCipher,
        settings: Settings,
        *,
        sms: Optional[SmsChannel] = None,
        email: Optional[EmailChannel] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.domains = domains
        self.cipher = cipher
        self.settings = settings
        self.sms = sms
        self.email = email

    def _require_user(self, domain_id: str, user_id: str) -> UserCredential:
        user = self.credentials.find_by_id(domain_id, user_id)
        if not user:
            raise NotFoundError("User not found", detail={"entity": "user"})
        return user

    def _seal_backup_codes(self, codes: List[str]) -> List[BackupCode]:
        return [
            BackupCode(code_hash=self.cipher.hash_code(code), ciphertext=self.cipher.encrypt(code))
            for code in codes
        ]

    def _decrypt_secret(self, method: MfaMethod) -> str:
        if not method.secret:
            raise MfaNotConfiguredError()
        try:
            return self.cipher.decrypt(method.secret)
        except SecretDecryptionError as exc:
            logger.error("mfa_secret_unreadable", method_id=method.id)
            raise ServerError("Unable to read MFA secret") from exc

    def _totp_matches(self, method: MfaMethod, code: str) -> bool:
        secret = self._decrypt_secret(method)
        return pyotp.TOTP(secret).verify(code, valid_window=TOTP_VALID_WINDOW)

    async def setup(
        self, domain_id: str, user_id: str, mfa_type: Union[MfaType, str] = MfaType.TOTP
    ) -> MfaSetupResult:
        user = self._require_user(domain_id, user_id)
        mfa_type = coerce_mfa_type(mfa_type)
        if mfa_type is not MfaType.TOTP:
            raise MfaTypeUnsupportedError(f"Setup is not supported for {mfa_type.value}")

        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=user.email, issuer_name=self.settings.mfa_issuer
        )
        backup_codes = [generate_backup_code() for _ in range(BACKUP_CODE_COUNT)]
        method = MfaMethod.new(
            user.id,
            MfaType.TOTP,
            secret=self.cipher.encrypt(secret),
            backup_codes=self._seal_backup_codes(backup_codes),
        )
        self.store.save_method(method)
        logger.info("mfa_setup_started", user_id=user.id, method_id=method.id)
        return MfaSetupResult(
            secret=secret, qr_code=render_qr_data_uri(uri), backup_codes=backup_codes
        )

    async def verify(
        self,
        domain_id: str,
        user_id: str,
        code: str,
        mfa_type: Union[MfaType, str] = MfaType.TOTP,
    ) -> bool:
        """Check a second-factor code. A wrong code is ``False``, never an error."""
        user = self._require_user(domain_id, user_id)
        mfa_type = coerce_mfa_type(mfa_type)
        if mfa_type is MfaType.SMS:
            return await self._sms().verify_code(domain_id, user.id, code)
        if mfa_type is MfaType.EMAIL:
            return await self._email().verify_code(domain_id, user.id, code)

        method = self.store.get_primary_method(user.id, MfaType.TOTP)
        if not method:
            raise MfaNotConfiguredError()
        if not code:
            return False
        if self._totp_matches(method, code):
            return True
        if self.store.consume_backup_code(method.id, self.cipher.hash_code(code)):
            logger.info("mfa_backup_code_used", user_id=user.id, method_id=method.id)
            return True
        logger.info("mfa_code_rejected", user_id=user.id, mfa_type=mfa_type.value)
        return False

    async def enable(
        self,
        domain_id: str,
        user_id: str,
        code: str,
        mfa_type: Union[MfaType, str] = MfaType.TOTP,
    ) -> None:
        user = self._require_user(domain_id, user_id)
        mfa_type = coerce_mfa_type(mfa_type)
        pending = self.store.get_pending_method(user.id, mfa_type)
        if not pending:
            raise NotFoundError("No pending MFA setup found", detail={"entity": "mfa_method"})

        # A pending method is not primary yet, so check the code against it directly
        if mfa_type is MfaType.TOTP:
            valid = bool(code) and self._totp_matches(pending, code)
        else:
            valid = await self.verify(domain_id, user.id, code, mfa_type)
        if not valid:
            raise MfaCodeInvalidError()

        self.store.promote_method(domain_id, user.id, pending.id)
        logger.info("mfa_enabled", user_id=user.id, method_id=pending.id, mfa_type=mfa_type.value)

    async def disable(self, domain_id: str, user_id: str) -> None:
        user = self._require_user(domain_id, user_id)
        removed = self.store.delete_methods(domain_id, user.id)
        logger.info("mfa_disabled", user_id=user.id, removed_count=removed)

    async def send_code(
        self, domain_id: str, user_id: str, mfa_type: Union[MfaType, str]
    ) -> SentCode:
        user = self._require_user(domain_id, user_id)
        mfa_type = coerce_mfa_type(mfa_type)
        if mfa_type is MfaType.SMS:
            if not user.phone:
                raise PhoneNotRegisteredError()
            return await self._sms().send_code(domain_id, user.id, user.phone)
        if mfa_type is MfaType.EMAIL:
            domain = self.domains.find_active_by_id(domain_id)
            display_name = domain.name if domain else None
            return await self._email().send_code(domain_id, user.id, user.email, display_name)
        raise MfaTypeUnsupportedError("TOTP codes come from the authenticator app")

    async def generate_backup_codes(self, domain_id: str, user_id: str) -> List[str]:
        user = self._require_user(domain_id, user_id)
        method = self.store.get_primary_method(user.id)
        if not method:
            raise NotFoundError("No active MFA method found", detail={"entity": "mfa_method"})
        codes = [generate_backup_code() for _ in range(BACKUP_CODE_COUNT)]
        self.store.replace_backup_codes(method.id, self._seal_backup_codes(codes))
        logger.info("mfa_backup_codes_regenerated", user_id=user.id, method_id=method.id)
        return codes

    async def available_methods(self, domain_id: str, user_id: str) -> List[str]:
        """Second factors the user can answer a challenge with."""
        user = self._require_user(domain_id, user_id)
        methods = [m.mfa_type.value for m in self.store.list_methods(user.id) if m.is_primary]
        return methods or [MfaType.TOTP.value]

    def _sms(self) -> SmsChannel:
        if self.sms is None:
            raise MfaTypeUnsupportedError("SMS delivery is not available")
        return self.sms

    def _email(self) -> EmailChannel:
        if self.email is None:
            raise MfaTypeUnsupportedError("Email delivery is not available")
        return self.email
