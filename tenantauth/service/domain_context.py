from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from tenantauth.logging import bind_domain
from tenantauth.service.errors import (
    BadRequestError,
    DomainNotFoundOrInactiveError,
    TokenDomainMismatchError,
)
from tenantauth.storage.interfaces import DomainRegistry
from tenantauth.storage.models import TenantDomain


@dataclass(frozen=True)
class DomainContext:
    """The tenant a request runs under, resolved once and passed explicitly."""

    domain_id: str
    domain_slug: str
    domain: TenantDomain

    @classmethod
    def for_domain(cls, domain: TenantDomain) -> "DomainContext":
        return cls(domain_id=domain.id, domain_slug=domain.slug, domain=domain)


def resolve_domain_context(
    registry: DomainRegistry,
    *,
    domain_id: Optional[str] = None,
    domain_slug: Optional[str] = None,
) -> DomainContext:
    """Resolve an active domain by id, falling back to slug.

    The resolved domain is also bound into the logging context.
    """
    if not domain_id and not domain_slug:
        raise BadRequestError(
            "Domain context is required. Provide a domain id or domain slug",
            error_code="domain_context_required",
        )
    domain = (
        registry.find_active_by_id(domain_id)
        if domain_id
        else registry.find_active_by_slug(domain_slug)
    )
    if not domain:
        raise DomainNotFoundOrInactiveError()
    bind_domain(domain.id)
    return DomainContext.for_domain(domain)


def ensure_same_domain(context: DomainContext, claims: Mapping[str, Any]) -> None:
    """Reject tokens minted for another domain than the request's."""
    token_domain = claims.get("domain_id")
    if token_domain != context.domain_id:
        raise TokenDomainMismatchError()
