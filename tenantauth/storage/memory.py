from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    BackupCode,
    MfaMethod,
    MfaType,
    PasswordResetToken,
    Role,
    RoleAssignment,
    TenantDomain,
    UserCredential,
)


class MemoryStore:
    """In-memory backing store for domains, users, MFA methods, reset tokens and roles."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.domains: Dict[str, TenantDomain] = {}
        self.users: Dict[str, UserCredential] = {}
        self.mfa_methods: Dict[str, MfaMethod] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.roles: Dict[str, Role] = {}
        self.role_assignments: List[RoleAssignment] = []
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()

    # domains
    def create_domain(
        self,
        slug: str,
        *,
        name: Optional[str] = None,
        external_tenant_id: Optional[str] = None,
        is_active: bool = True,
    ) -> TenantDomain:
        with self._data_lock:
            if any(d.slug == slug for d in self.domains.values()):
                raise ConstraintViolation("domain slug already exists", {"field": "slug"})
            domain = TenantDomain(
                id=str(uuid.uuid4()),
                slug=slug,
                name=name,
                external_tenant_id=external_tenant_id,
                is_active=is_active,
            )
            self.domains[domain.id] = domain
            self.logger.info("domain_created", domain_id=domain.id, slug=slug)
            return domain

    def set_domain_active(self, domain_id: str, is_active: bool) -> Optional[TenantDomain]:
        with self._data_lock:
            domain = self.domains.get(domain_id)
            if not domain:
                return None
            domain.is_active = is_active
            return domain

    def find_active_by_id(self, domain_id: str) -> Optional[TenantDomain]:
        with self._data_lock:
            domain = self.domains.get(domain_id)
            return domain if domain and domain.is_active else None

    def find_active_by_slug(self, slug: str) -> Optional[TenantDomain]:
        with self._data_lock:
            return next(
                (d for d in self.domains.values() if d.slug == slug and d.is_active), None
            )

    def find_active_by_external_tenant_id(
        self, external_tenant_id: str
    ) -> Optional[TenantDomain]:
        with self._data_lock:
            return next(
                (
                    d
                    for d in self.domains.values()
                    if d.external_tenant_id == external_tenant_id and d.is_active
                ),
                None,
            )

    # users
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
        with self._data_lock:
            if domain_id not in self.domains:
                raise ConstraintViolation("domain not found for user", {"domain_id": domain_id})
            if self.find_by_email(domain_id, email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserCredential(
                id=str(uuid.uuid4()),
                domain_id=domain_id,
                email=email,
                password_hash=password_hash,
                full_name=full_name,
                phone=phone,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            return user

    def find_by_email(self, domain_id: str, email: str) -> Optional[UserCredential]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.domain_id == domain_id and u.email.lower() == normalized
                ),
                None,
            )

    def find_by_id(self, domain_id: str, user_id: str) -> Optional[UserCredential]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.domain_id != domain_id:
                return None
            return user

    def _require_user(self, domain_id: str, user_id: str) -> UserCredential:
        user = self.find_by_id(domain_id, user_id)
        if not user:
            raise ConstraintViolation(
                "user not found in domain", {"user_id": user_id, "domain_id": domain_id}
            )
        return user

    def update_password_hash(self, domain_id: str, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self._require_user(domain_id, user_id).password_hash = password_hash

    def update_last_login(self, domain_id: str, user_id: str) -> None:
        with self._data_lock:
            self._require_user(domain_id, user_id).last_login_at = datetime.utcnow()

    def set_verified(self, domain_id: str, user_id: str, verified: bool) -> None:
        with self._data_lock:
            self._require_user(domain_id, user_id).is_verified = verified

    def set_user_active(self, domain_id: str, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            self._require_user(domain_id, user_id).is_active = is_active

    # mfa
    def list_methods(self, user_id: str) -> List[MfaMethod]:
        with self._data_lock:
            methods = [m for m in self.mfa_methods.values() if m.user_id == user_id]
            return sorted(methods, key=lambda m: m.created_at)

    def get_primary_method(
        self, user_id: str, mfa_type: Optional[MfaType] = None
    ) -> Optional[MfaMethod]:
        with self._data_lock:
            return next(
                (
                    m
                    for m in self.list_methods(user_id)
                    if m.is_primary and (mfa_type is None or m.mfa_type == mfa_type)
                ),
                None,
            )

    def get_pending_method(self, user_id: str, mfa_type: MfaType) -> Optional[MfaMethod]:
        with self._data_lock:
            pending = [
                m
                for m in self.list_methods(user_id)
                if m.mfa_type == mfa_type and not m.is_primary
            ]
            return pending[-1] if pending else None

    def save_method(self, method: MfaMethod) -> MfaMethod:
        with self._data_lock:
            if method.user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": method.user_id})
            self.mfa_methods[method.id] = method
            return method

    def promote_method(self, domain_id: str, user_id: str, method_id: str) -> None:
        with self._data_lock:
            user = self._require_user(domain_id, user_id)
            target = self.mfa_methods.get(method_id)
            if not target or target.user_id != user_id:
                raise ConstraintViolation("mfa method not found", {"method_id": method_id})
            for method in self.list_methods(user_id):
                method.is_primary = method.id == method_id
            user.mfa_enabled = True

    def delete_methods(self, domain_id: str, user_id: str) -> int:
        with self._data_lock:
            user = self._require_user(domain_id, user_id)
            doomed = [m.id for m in self.list_methods(user_id)]
            for method_id in doomed:
                self.mfa_methods.pop(method_id, None)
            user.mfa_enabled = False
            return len(doomed)

    def replace_backup_codes(self, method_id: str, codes: List[BackupCode]) -> None:
        with self._data_lock:
            method = self.mfa_methods.get(method_id)
            if not method:
                raise ConstraintViolation("mfa method not found", {"method_id": method_id})
            method.backup_codes = list(codes)

    def consume_backup_code(self, method_id: str, code_hash: str) -> bool:
        with self._data_lock:
            method = self.mfa_methods.get(method_id)
            if not method:
                return False
            remaining = [c for c in method.backup_codes if c.code_hash != code_hash]
            if len(remaining) == len(method.backup_codes):
                return False
            method.backup_codes = remaining
            return True

    # password reset
    def save_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found for reset token", {"user_id": record.user_id})
            self.reset_tokens[record.token] = record
            return record

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            return self.reset_tokens.get(token)

    def mark_reset_token_used(self, token_id: str) -> bool:
        with self._data_lock:
            record = next((r for r in self.reset_tokens.values() if r.id == token_id), None)
            if not record or record.used_at is not None:
                return False
            record.used_at = datetime.utcnow()
            return True

    # roles
    def create_role(
        self,
        domain_id: str,
        name: str,
        permissions: Iterable[str] = (),
        *,
        description: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            if self.get_role_by_name(domain_id, name):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                domain_id=domain_id,
                name=name,
                permissions=set(permissions),
                description=description,
            )
            self.roles[role.id] = role
            return role

    def get_role_by_name(self, domain_id: str, name: str) -> Optional[Role]:
        with self._data_lock:
            return next(
                (r for r in self.roles.values() if r.domain_id == domain_id and r.name == name),
                None,
            )

    def list_user_roles(self, domain_id: str, user_id: str) -> List[Role]:
        with self._data_lock:
            roles: List[Role] = []
            for assignment in self.role_assignments:
                if assignment.user_id != user_id:
                    continue
                role = self.roles.get(assignment.role_id)
                if role and role.domain_id == domain_id:
                    roles.append(role)
            return roles

    def assign_role(self, user_id: str, role_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if any(
                a.user_id == user_id and a.role_id == role_id for a in self.role_assignments
            ):
                return
            self.role_assignments.append(RoleAssignment(user_id=user_id, role_id=role_id))

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            before = len(self.role_assignments)
            self.role_assignments = [
                a
                for a in self.role_assignments
                if not (a.user_id == user_id and a.role_id == role_id)
            ]
            return len(self.role_assignments) != before


class MemoryCache:
    """Process-local TTL key-value ledger used when Redis is unavailable."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> int:
        with self._lock:
            live = self._live(key) is not None
            self._entries.pop(key, None)
            return 1 if live else 0

    async def delete_many(self, keys: List[str]) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
            return removed

    async def scan_by_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(
                k for k in list(self._entries) if k.startswith(prefix) and self._live(k) is not None
            )

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._entries[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
                return 1
            _, expires_at = self._entries[key]
            count = int(current) + 1
            self._entries[key] = (str(count), expires_at)
            return count

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
