"""Collaborator interfaces consumed by the authentication services.

Stores are synchronous, mirroring the in-memory reference store; the session
ledger is asynchronous because every call is a network round trip to Redis.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from tenantauth.storage.models import (
    BackupCode,
    MfaMethod,
    MfaType,
    PasswordResetToken,
    Role,
    TenantDomain,
    UserCredential,
)


class DomainRegistry(Protocol):
    def find_active_by_id(self, domain_id: str) -> Optional[TenantDomain]:
        ...

    def find_active_by_slug(self, slug: str) -> Optional[TenantDomain]:
        ...

    def find_active_by_external_tenant_id(
        self, external_tenant_id: str
    ) -> Optional[TenantDomain]:
        ...


class CredentialStore(Protocol):
    def find_by_email(self, domain_id: str, email: str) -> Optional[UserCredential]:
        ...

    def find_by_id(self, domain_id: str, user_id: str) -> Optional[UserCredential]:
        ...

    def create(
        self,
        domain_id: str,
        *,
        email: str,
        password_hash: Optional[str] = None,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        is_verified: bool = False,
    ) -> UserCredential:
        """Persist a new user; raises ConstraintViolation on a duplicate email."""
        ...

    def update_password_hash(self, domain_id: str, user_id: str, password_hash: str) -> None:
        ...

    def update_last_login(self, domain_id: str, user_id: str) -> None:
        ...

    def set_verified(self, domain_id: str, user_id: str, verified: bool) -> None:
        ...


class MfaStore(Protocol):
    def list_methods(self, user_id: str) -> List[MfaMethod]:
        ...

    def get_primary_method(
        self, user_id: str, mfa_type: Optional[MfaType] = None
    ) -> Optional[MfaMethod]:
        ...

    def get_pending_method(self, user_id: str, mfa_type: MfaType) -> Optional[MfaMethod]:
        """Newest non-primary method of the given type."""
        ...

    def save_method(self, method: MfaMethod) -> MfaMethod:
        ...

    def promote_method(self, domain_id: str, user_id: str, method_id: str) -> None:
        """Demote every other primary method, promote this one, set mfa_enabled."""
        ...

    def delete_methods(self, domain_id: str, user_id: str) -> int:
        """Remove all methods and clear the user's mfa_enabled flag."""
        ...

    def replace_backup_codes(self, method_id: str, codes: List[BackupCode]) -> None:
        ...

    def consume_backup_code(self, method_id: str, code_hash: str) -> bool:
        """Atomically claim one backup code; False when absent or already used."""
        ...


class ResetTokenStore(Protocol):
    def save_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        ...

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        ...

    def mark_reset_token_used(self, token_id: str) -> bool:
        """Set used_at once; False when the token was already used."""
        ...


class RoleStore(Protocol):
    def list_user_roles(self, domain_id: str, user_id: str) -> List[Role]:
        """Roles held by the user, in assignment order."""
        ...

    def get_role_by_name(self, domain_id: str, name: str) -> Optional[Role]:
        ...

    def assign_role(self, user_id: str, role_id: str) -> None:
        ...

    def remove_role(self, user_id: str, role_id: str) -> bool:
        ...


class SessionLedger(Protocol):
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def delete(self, key: str) -> int:
        ...

    async def delete_many(self, keys: List[str]) -> int:
        ...

    async def scan_by_prefix(self, prefix: str) -> List[str]:
        ...

    async def pop(self, key: str) -> Optional[str]:
        """Atomically fetch and delete a key."""
        ...

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, starting its TTL on first increment."""
        ...


__all__ = [
    "DomainRegistry",
    "CredentialStore",
    "MfaStore",
    "ResetTokenStore",
    "RoleStore",
    "SessionLedger",
]
