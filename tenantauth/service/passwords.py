from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
SPECIAL_CHARACTERS = "@$!%*?&"

_STRENGTH_RULES = (
    (lambda pw: len(pw) >= MIN_PASSWORD_LENGTH,
     f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"),
    (lambda pw: re.search(r"[a-z]", pw) is not None,
     "Password must contain at least one lowercase letter"),
    (lambda pw: re.search(r"[A-Z]", pw) is not None,
     "Password must contain at least one uppercase letter"),
    (lambda pw: re.search(r"\d", pw) is not None,
     "Password must contain at least one digit"),
    (lambda pw: any(ch in SPECIAL_CHARACTERS for ch in pw),
     f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"),
)


class PasswordService:
    """argon2id hashing plus the strength policy applied at registration and reset."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def validate_strength(self, password: str) -> List[str]:
        """Return every violated rule; an empty list means the password is acceptable."""
        return [message for check, message in _STRENGTH_RULES if not check(password or "")]
