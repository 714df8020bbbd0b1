from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Set


class MfaType(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"


@dataclass
class TenantDomain:
    id: str
    slug: str
    name: Optional[str] = None
    external_tenant_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UserCredential:
    id: str
    domain_id: str
    email: str
    password_hash: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BackupCode:
    """A one-time backup code: keyed hash for atomic claims, ciphertext for recovery."""

    code_hash: str
    ciphertext: str


@dataclass
class MfaMethod:
    id: str
    user_id: str
    mfa_type: MfaType
    secret: Optional[str] = None
    backup_codes: List[BackupCode] = field(default_factory=list)
    is_primary: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        mfa_type: MfaType,
        *,
        secret: Optional[str] = None,
        backup_codes: Optional[List[BackupCode]] = None,
    ) -> "MfaMethod":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            mfa_type=mfa_type,
            secret=secret,
            backup_codes=list(backup_codes or []),
        )


@dataclass
class PasswordResetToken:
    id: str
    token: str
    user_id: str
    domain_id: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls, token: str, user_id: str, domain_id: str, ttl_seconds: int
    ) -> "PasswordResetToken":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            domain_id=domain_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    @property
    def is_expired(self) -> bool:
        return datetime.utcnow() > self.expires_at


@dataclass
class Role:
    id: str
    domain_id: str
    name: str
    permissions: Set[str] = field(default_factory=set)
    description: Optional[str] = None


@dataclass
class RoleAssignment:
    user_id: str
    role_id: str
    assigned_at: datetime = field(default_factory=datetime.utcnow)
