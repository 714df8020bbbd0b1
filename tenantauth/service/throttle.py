from __future__ import annotations

import hashlib

from tenantauth.logging import get_logger
from tenantauth.service.errors import RateLimitedError
from tenantauth.storage.interfaces import SessionLedger

logger = get_logger(__name__)


class DomainThrottle:
    """Fixed-window attempt counter per (domain, subject) kept in the ledger.

    A limit of zero or less disables the check.
    """

    def __init__(
        self, ledger: SessionLedger, *, name: str, limit: int, window_seconds: int
    ) -> None:
        self.ledger = ledger
        self.name = name
        self.limit = limit
        self.window_seconds = max(1, window_seconds)

    def _key(self, domain_id: str, subject: str) -> str:
        # Hash the subject so user input cannot inject key delimiters
        digest = hashlib.sha256(subject.strip().lower().encode()).hexdigest()
        return f"rl:{self.name}:{domain_id}:{digest}"

    async def hit(self, domain_id: str, subject: str) -> int:
        """Count one attempt; raise RateLimitedError once the window is exhausted."""
        if self.limit <= 0:
            return 0
        count = await self.ledger.incr_with_ttl(self._key(domain_id, subject), self.window_seconds)
        if count > self.limit:
            logger.warning("rate_limited", throttle=self.name, attempt_count=count)
            raise RateLimitedError(
                "Too many attempts, try again later",
                detail={"retry_after": self.window_seconds},
            )
        return count

    async def reset(self, domain_id: str, subject: str) -> None:
        if self.limit <= 0:
            return
        await self.ledger.delete(self._key(domain_id, subject))
