import pytest

from pmoguard.service.errors import AuthenticationError, ForbiddenError, TenantContextMissingError
from pmoguard.service.guards import (
    ALL_TENANT_ROLES,
    TENANT_ADMIN_ROLES,
    TENANT_WRITE_ROLES,
    RoleGuard,
)
from pmoguard.service.tenancy import TenantContext
from pmoguard.storage.models import GlobalRole, TenantRole


@pytest.fixture
def guard(store):
    return RoleGuard(store)


@pytest.fixture
def users(store):
    return {
        "user": store.create_user("user@example.com"),
        "admin": store.create_user("admin@example.com", role=GlobalRole.ADMIN),
        "super": store.create_user("super@example.com", role=GlobalRole.SUPER_ADMIN),
        "inactive": store.create_user("gone@example.com", is_active=False),
    }


@pytest.fixture
def tenant(store):
    record = store.create_tenant("acme", "Acme")
    return TenantContext(record.id, record.slug, "header")


class TestGlobalRoles:
    def test_missing_identity_is_unauthenticated(self, guard):
        with pytest.raises(AuthenticationError):
            guard.require_role(None, GlobalRole.USER)

    def test_unknown_user_is_unauthenticated(self, guard):
        with pytest.raises(AuthenticationError):
            guard.require_role("nobody", GlobalRole.USER)

    def test_inactive_user_is_unauthenticated(self, guard, users):
        with pytest.raises(AuthenticationError):
            guard.require_role(users["inactive"].id, GlobalRole.USER)

    def test_exact_role_match(self, guard, users):
        assert guard.require_role(users["user"].id, GlobalRole.USER).id == users["user"].id

    def test_admin_satisfies_single_role(self, guard, users):
        assert guard.require_role(users["admin"].id, GlobalRole.SUPER_ADMIN).id == users["admin"].id

    def test_super_admin_does_not_satisfy_other_single_role(self, guard, users):
        with pytest.raises(ForbiddenError):
            guard.require_role(users["super"].id, GlobalRole.USER)

    def test_user_denied_admin(self, guard, users):
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_admin(users["user"].id)
        assert excinfo.value.status_code == 403

    def test_require_any_role_has_no_admin_short_circuit(self, guard, users):
        with pytest.raises(ForbiddenError):
            guard.require_any_role(users["admin"].id, [GlobalRole.SUPER_ADMIN])
        assert guard.require_any_role(users["admin"].id, [GlobalRole.ADMIN, GlobalRole.SUPER_ADMIN])

    def test_require_super_admin(self, guard, users):
        assert guard.require_super_admin(users["super"].id)
        with pytest.raises(ForbiddenError):
            guard.require_super_admin(users["admin"].id)


class TestTenantRoles:
    def test_member_with_allowed_role(self, guard, store, users, tenant):
        store.add_tenant_member(tenant.tenant_id, users["user"].id, TenantRole.ADMIN)
        membership = guard.require_tenant_role(users["user"].id, tenant, TENANT_ADMIN_ROLES)
        assert membership.role == TenantRole.ADMIN

    def test_member_with_lower_role_is_forbidden(self, guard, store, users, tenant):
        store.add_tenant_member(tenant.tenant_id, users["user"].id, TenantRole.VIEWER)
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_tenant_role(users["user"].id, tenant, TENANT_WRITE_ROLES)
        assert excinfo.value.message == "insufficient role"

    def test_non_member_has_no_access(self, guard, users, tenant):
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_tenant_role(users["user"].id, tenant, ALL_TENANT_ROLES)
        assert excinfo.value.message == "no access to this tenant"

    @pytest.mark.parametrize("operator", ["admin", "super"])
    def test_platform_operators_bypass(self, guard, users, tenant, operator):
        assert guard.require_tenant_role(users[operator].id, tenant, TENANT_ADMIN_ROLES) is None

    def test_missing_tenant_context(self, guard, users):
        with pytest.raises(TenantContextMissingError):
            guard.require_tenant_role(users["user"].id, None, ALL_TENANT_ROLES)

    def test_unauthenticated_checked_before_tenant(self, guard):
        with pytest.raises(AuthenticationError):
            guard.require_tenant_role(None, None, ALL_TENANT_ROLES)

    def test_role_sets_are_ordered(self):
        assert TENANT_ADMIN_ROLES < TENANT_WRITE_ROLES < ALL_TENANT_ROLES
