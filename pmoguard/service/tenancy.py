from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from pmoguard.logging import get_logger
from pmoguard.service.errors import ConflictError, NotFoundError, TenantContextMissingError
from pmoguard.storage.errors import ConstraintViolation, RecordNotFound
from pmoguard.storage.models import Tenant, TenantMembership, TenantRole

logger = get_logger(__name__)


class TenantStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def get_tenant_by_domain(self, host: str) -> Optional[Tenant]: ...

    def create_tenant(self, slug: str, name: Optional[str] = None, **kwargs) -> Tenant: ...

    def add_tenant_member(self, tenant_id: str, user_id: str, role: TenantRole | str = ...) -> TenantMembership: ...

    def get_tenant_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]: ...

    def list_tenant_members(self, tenant_id: str) -> List[TenantMembership]: ...

    def list_user_tenants(self, user_id: str) -> List[Tuple[Tenant, TenantMembership]]: ...

    def update_tenant_member_role(self, tenant_id: str, user_id: str, role: TenantRole | str) -> Optional[TenantMembership]: ...

    def remove_tenant_member(self, tenant_id: str, user_id: str) -> bool: ...


@dataclass(frozen=True)
class TenantContext:
    """The tenant a single request operates in; created per request, never shared."""

    tenant_id: str
    slug: str
    source: str


def require_tenant(context: Optional[TenantContext]) -> TenantContext:
    if context is None:
        raise TenantContextMissingError()
    return context


def _strip_port(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, e.g. [::1]:8000
        return host.split("]", 1)[0] + "]"
    return host.split(":", 1)[0].rstrip(".")


class TenantResolver:
    """Pick the active tenant from the ``X-Tenant-ID`` header or the request host.

    Order: explicit header (tenant id or slug), exact domain alias, subdomain of
    the configured base domain, then the default tenant when the request
    carries no tenant signal at all. A signal that names an unknown tenant
    resolves to ``None`` instead of silently falling back to the default.
    When multi-tenancy is disabled every request gets the default tenant.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        multi_tenant_enabled: bool = True,
        default_slug: Optional[str] = "default",
        base_domain: Optional[str] = None,
    ) -> None:
        self.store = store
        self.multi_tenant_enabled = multi_tenant_enabled
        self.default_slug = default_slug
        self.base_domain = base_domain.strip().lower().lstrip(".") if base_domain else None

    def resolve(
        self, *, header_value: Optional[str] = None, host: Optional[str] = None
    ) -> Optional[TenantContext]:
        if not self.multi_tenant_enabled:
            return self._default()

        if header_value and header_value.strip():
            hint = header_value.strip()
            tenant = self.store.get_tenant(hint) or self.store.get_tenant_by_slug(hint)
            if tenant is None:
                logger.info("tenant_resolution_failed", source="header")
                return None
            return TenantContext(tenant.id, tenant.slug, "header")

        hostname = _strip_port(host) if host else ""
        if hostname:
            tenant = self.store.get_tenant_by_domain(hostname)
            if tenant is not None:
                return TenantContext(tenant.id, tenant.slug, "domain")
            subdomain = self._subdomain(hostname)
            if subdomain:
                tenant = self.store.get_tenant_by_slug(subdomain)
                if tenant is None:
                    logger.info("tenant_resolution_failed", source="subdomain")
                    return None
                return TenantContext(tenant.id, tenant.slug, "subdomain")

        return self._default()

    def _subdomain(self, hostname: str) -> Optional[str]:
        if not self.base_domain or not hostname.endswith("." + self.base_domain):
            return None
        label = hostname[: -len(self.base_domain) - 1]
        # only single-label subdomains name a tenant; www is the marketing host
        if not label or "." in label or label == "www":
            return None
        return label

    def _default(self) -> Optional[TenantContext]:
        if not self.default_slug:
            return None
        tenant = self.store.get_tenant_by_slug(self.default_slug)
        if tenant is None:
            logger.warning("default_tenant_missing", slug=self.default_slug)
            return None
        return TenantContext(tenant.id, tenant.slug, "default")


class TenantService:
    """Tenant provisioning and membership management."""

    def __init__(self, store: TenantStore) -> None:
        self.store = store

    def create_tenant(
        self,
        slug: str,
        name: Optional[str],
        *,
        owner_id: Optional[str] = None,
        domain_aliases: Optional[List[str]] = None,
    ) -> Tenant:
        try:
            tenant = self.store.create_tenant(slug, name, domain_aliases=domain_aliases)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if owner_id:
            self.store.add_tenant_member(tenant.id, owner_id, TenantRole.OWNER)
        logger.info("tenant_created", tenant_id=tenant.id, slug=tenant.slug)
        return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    def list_user_tenants(self, user_id: str) -> List[Tuple[Tenant, TenantMembership]]:
        return self.store.list_user_tenants(user_id)

    def list_members(self, tenant_id: str) -> List[TenantMembership]:
        return self.store.list_tenant_members(tenant_id)

    def add_member(
        self, tenant_id: str, user_id: str, role: TenantRole = TenantRole.MEMBER
    ) -> TenantMembership:
        try:
            membership = self.store.add_tenant_member(tenant_id, user_id, role)
        except RecordNotFound as exc:
            raise NotFoundError(f"{exc.kind} not found") from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("tenant_member_added", tenant_id=tenant_id, user_id=user_id, role=role.value)
        return membership

    def update_member_role(
        self, tenant_id: str, user_id: str, role: TenantRole
    ) -> TenantMembership:
        membership = self.store.update_tenant_member_role(tenant_id, user_id, role)
        if membership is None:
            raise NotFoundError("membership not found")
        logger.info("tenant_member_role_updated", tenant_id=tenant_id, user_id=user_id, role=role.value)
        return membership

    def remove_member(self, tenant_id: str, user_id: str) -> None:
        if not self.store.remove_tenant_member(tenant_id, user_id):
            raise NotFoundError("membership not found")
        logger.info("tenant_member_removed", tenant_id=tenant_id, user_id=user_id)
