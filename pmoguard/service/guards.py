from __future__ import annotations

from typing import Iterable, Optional, Protocol

from pmoguard.logging import get_logger
from pmoguard.service.errors import AuthenticationError, ForbiddenError
from pmoguard.service.tenancy import TenantContext, require_tenant
from pmoguard.storage.models import GlobalRole, TenantMembership, TenantRole, User

logger = get_logger(__name__)

# Platform operators pass every tenant-role check. This is the only bypass
# rule and it is evaluated before any membership lookup.
PLATFORM_OPERATOR_ROLES = frozenset({GlobalRole.ADMIN, GlobalRole.SUPER_ADMIN})

TENANT_ADMIN_ROLES = frozenset({TenantRole.OWNER, TenantRole.ADMIN})
TENANT_WRITE_ROLES = frozenset({TenantRole.OWNER, TenantRole.ADMIN, TenantRole.MEMBER})
ALL_TENANT_ROLES = frozenset(TenantRole)


class GuardStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_tenant_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]: ...


def is_platform_operator(user: User) -> bool:
    return user.role in PLATFORM_OPERATOR_ROLES


class RoleGuard:
    """Global and per-tenant role checks.

    Every check first loads the caller from the credential store: a missing
    identity or an unknown/deactivated user is ``AuthenticationError`` (401),
    a known user without the role is ``ForbiddenError`` (403).
    """

    def __init__(self, store: GuardStore) -> None:
        self.store = store

    def load_user(self, user_id: Optional[str]) -> User:
        if not user_id:
            raise AuthenticationError("authentication required")
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("authentication required")
        return user

    def require_role(self, user_id: Optional[str], role: GlobalRole) -> User:
        """Exact role match; ADMIN satisfies any single-role requirement."""
        user = self.load_user(user_id)
        if user.role == GlobalRole.ADMIN:
            return user
        if user.role != role:
            self._deny(user, "global_role", required=[role.value])
        return user

    def require_any_role(self, user_id: Optional[str], roles: Iterable[GlobalRole]) -> User:
        """Membership in ``roles``; no ADMIN short-circuit."""
        allowed = frozenset(roles)
        user = self.load_user(user_id)
        if user.role not in allowed:
            self._deny(user, "global_role", required=sorted(r.value for r in allowed))
        return user

    def require_admin(self, user_id: Optional[str]) -> User:
        return self.require_any_role(user_id, PLATFORM_OPERATOR_ROLES)

    def require_super_admin(self, user_id: Optional[str]) -> User:
        return self.require_any_role(user_id, (GlobalRole.SUPER_ADMIN,))

    def require_tenant_role(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        roles: Iterable[TenantRole],
    ) -> Optional[TenantMembership]:
        """Check the caller's role in the active tenant.

        Returns the membership row, or ``None`` when a platform operator passed
        through the bypass without one.
        """
        allowed = frozenset(roles)
        user = self.load_user(user_id)
        context = require_tenant(tenant)
        if is_platform_operator(user):
            return self.store.get_tenant_membership(context.tenant_id, user.id)
        membership = self.store.get_tenant_membership(context.tenant_id, user.id)
        if membership is None:
            logger.info(
                "tenant_access_denied",
                user_id=user.id,
                tenant_id=context.tenant_id,
                reason="no_membership",
            )
            raise ForbiddenError("no access to this tenant")
        if membership.role not in allowed:
            self._deny(
                user,
                "tenant_role",
                required=sorted(r.value for r in allowed),
                tenant_id=context.tenant_id,
            )
        return membership

    def is_tenant_member(self, user: User, tenant_id: str) -> bool:
        if is_platform_operator(user):
            return True
        return self.store.get_tenant_membership(tenant_id, user.id) is not None

    @staticmethod
    def _deny(user: User, check: str, **fields) -> None:
        logger.info("role_check_denied", user_id=user.id, check=check, **fields)
        raise ForbiddenError("insufficient role")
