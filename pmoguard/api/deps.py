from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from fastapi import Depends, Header, Request, Response

from pmoguard.config import Settings
from pmoguard.service.runtime import get_runtime
from pmoguard.service.tenancy import TenantContext, require_tenant
from pmoguard.storage.models import GlobalRole, TenantMembership, TenantRole, User


@dataclass
class TenantAccess:
    """Caller, active tenant and the caller's membership row (None for operator bypass)."""

    user: User
    tenant: TenantContext
    membership: Optional[TenantMembership]


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_identity_optional(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[str]:
    """User id from cookie or Bearer header; absent or invalid tokens yield None."""
    return get_runtime().identity.optional(request.cookies, authorization)


def get_identity(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """User id from cookie or Bearer header; 401 when missing, invalid or expired."""
    return get_runtime().identity.require(request.cookies, authorization)


def get_tenant_context(
    request: Request,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
) -> Optional[TenantContext]:
    return get_runtime().tenant_resolver.resolve(
        header_value=x_tenant_id, host=request.headers.get("host")
    )


def get_required_tenant(
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
) -> TenantContext:
    return require_tenant(tenant)


def get_current_user(user_id: str = Depends(get_identity)) -> User:
    return get_runtime().guard.load_user(user_id)


def require_role(role: GlobalRole) -> Callable[..., User]:
    def dependency(user_id: str = Depends(get_identity)) -> User:
        return get_runtime().guard.require_role(user_id, role)

    return dependency


def require_any_role(*roles: GlobalRole) -> Callable[..., User]:
    def dependency(user_id: str = Depends(get_identity)) -> User:
        return get_runtime().guard.require_any_role(user_id, roles)

    return dependency


def require_admin(user_id: str = Depends(get_identity)) -> User:
    return get_runtime().guard.require_admin(user_id)


def require_super_admin(user_id: str = Depends(get_identity)) -> User:
    return get_runtime().guard.require_super_admin(user_id)


def require_tenant_role(roles: Iterable[TenantRole]) -> Callable[..., TenantAccess]:
    allowed = frozenset(roles)

    def dependency(
        user_id: str = Depends(get_identity),
        tenant: Optional[TenantContext] = Depends(get_tenant_context),
    ) -> TenantAccess:
        guard = get_runtime().guard
        membership = guard.require_tenant_role(user_id, tenant, allowed)
        return TenantAccess(
            user=guard.load_user(user_id),
            tenant=require_tenant(tenant),
            membership=membership,
        )

    return dependency


def apply_auth_cookie(response: Response, token: str, settings: Settings) -> None:
    # cross-origin frontends only receive the cookie with SameSite=None; Secure
    cross_origin = settings.cookie_cross_origin
    response.set_cookie(
        settings.auth_cookie_name,
        token,
        httponly=True,
        secure=True if cross_origin else settings.cookie_secure,
        samesite="none" if cross_origin else "lax",
        max_age=settings.token_ttl_seconds,
        path="/",
    )


def clear_auth_cookie(response: Response, settings: Settings) -> None:
    cross_origin = settings.cookie_cross_origin
    response.delete_cookie(
        settings.auth_cookie_name,
        path="/",
        httponly=True,
        secure=True if cross_origin else settings.cookie_secure,
        samesite="none" if cross_origin else "lax",
    )
