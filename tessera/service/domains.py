from __future__ import annotations

import re
from typing import Optional, Protocol

from tessera.logging import get_logger
from tessera.service.errors import ConflictError, ValidationError
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import Domain

logger = get_logger(__name__)

_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")


class DomainStore(Protocol):
    def create_domain(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Domain: ...

    def get_domain(self, domain_id: str) -> Optional[Domain]: ...

    def get_domain_by_slug(self, slug: str) -> Optional[Domain]: ...


class DomainService:
    def __init__(self, store: DomainStore) -> None:
        self.store = store

    def resolve_domain(
        self, domain_id: Optional[str] = None, slug: Optional[str] = None
    ) -> Domain:
        """Find an active domain by id, falling back to slug."""
        if not domain_id and not slug:
            raise ValidationError(
                "Domain context is required. Provide X-Domain-ID or X-Domain-Slug header, "
                "domain_id/domain_slug query param, or domain_id in body",
                detail={"field": "domain_id"},
            )
        domain = self.store.get_domain(domain_id) if domain_id else self.store.get_domain_by_slug(slug)
        if not domain or not domain.is_active:
            logger.warning("domain_resolution_failed", domain_id=domain_id, slug=slug)
            raise ValidationError("Domain not found or inactive", detail={"field": "domain_id"})
        return domain

    def create_domain(
        self, name: str, slug: str, *, description: Optional[str] = None
    ) -> Domain:
        slug = slug.strip().lower()
        if not _SLUG_RE.match(slug):
            raise ValidationError(
                "slug may contain lowercase letters, digits and hyphens", detail={"field": "slug"}
            )
        try:
            domain = self.store.create_domain(name.strip(), slug, description=description)
        except ConstraintViolation as exc:
            raise ConflictError("Domain slug already exists") from exc
        logger.info("domain_created", domain_id=domain.id, slug=slug)
        return domain
