from __future__ import annotations

import re

from tenantauth.logging import get_logger
from tenantauth.storage.interfaces import SessionLedger

logger = get_logger(__name__)

_TTL_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}

REFRESH_TOKEN_PREFIX = "refresh_token"


def parse_ttl(value: object, default_seconds: int) -> int:
    """Convert ``"7d"``/``"1h"``/``"30m"``/``"60s"`` to seconds.

    Anything unrecognized falls back to ``default_seconds`` instead of raising.
    """
    if not isinstance(value, str):
        return default_seconds
    match = _TTL_RE.match(value)
    if not match:
        return default_seconds
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


def refresh_token_key(domain_id: str, user_id: str, token: str) -> str:
    return f"{REFRESH_TOKEN_PREFIX}:{domain_id}:{user_id}:{token}"


class RefreshTokenLedger:
    """Live refresh tokens keyed by (domain, user, token) with the refresh TTL."""

    def __init__(self, ledger: SessionLedger, ttl_seconds: int) -> None:
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds

    async def store(self, domain_id: str, user_id: str, token: str) -> None:
        await self.ledger.set_with_ttl(
            refresh_token_key(domain_id, user_id, token), user_id, self.ttl_seconds
        )

    async def validate(self, domain_id: str, user_id: str, token: str) -> bool:
        stored = await self.ledger.get(refresh_token_key(domain_id, user_id, token))
        return stored == user_id

    async def consume(self, domain_id: str, user_id: str, token: str) -> bool:
        """Atomically remove a live token; only one concurrent caller gets True."""
        stored = await self.ledger.pop(refresh_token_key(domain_id, user_id, token))
        return stored == user_id

    async def revoke(self, domain_id: str, user_id: str, token: str) -> None:
        await self.ledger.delete(refresh_token_key(domain_id, user_id, token))

    async def revoke_all(self, domain_id: str, user_id: str) -> int:
        keys = await self.ledger.scan_by_prefix(
            f"{REFRESH_TOKEN_PREFIX}:{domain_id}:{user_id}:"
        )
        if not keys:
            return 0
        revoked = await self.ledger.delete_many(keys)
        logger.info("refresh_tokens_revoked", user_id=user_id, revoked_count=revoked)
        return revoked
