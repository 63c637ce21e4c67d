import pytest

from pmoguard.service.runtime import get_runtime
from pmoguard.storage.models import GlobalRole, TenantRole
from scripts.bootstrap_admin import bootstrap_admin, validate_password

PASSWORD = "Bootstrap-Pass-123"


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Bootstrap-Pass-123", True),
        ("alllowercaseletters", False),
        ("Short1!", False),
        ("lowercase-and-123", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


def test_creates_super_admin_owning_default_tenant():
    result = bootstrap_admin("ops@example.com", PASSWORD)
    assert result["status"] == "created"
    runtime = get_runtime()
    user = runtime.store.get_user(result["user_id"])
    assert user.role == GlobalRole.SUPER_ADMIN
    membership = runtime.store.get_tenant_membership(result["tenant_id"], user.id)
    assert membership.role == TenantRole.OWNER
    assert runtime.auth.authenticate_credentials("ops@example.com", PASSWORD).id == user.id


def test_promotes_existing_user_and_is_idempotent():
    runtime = get_runtime()
    existing = runtime.auth.create_user("lead@example.com", PASSWORD)
    assert bootstrap_admin("lead@example.com", PASSWORD)["status"] == "promoted"
    assert runtime.store.get_user(existing.id).role == GlobalRole.SUPER_ADMIN
    assert bootstrap_admin("lead@example.com", PASSWORD)["status"] == "already_super_admin"


def test_dry_run_writes_nothing():
    result = bootstrap_admin("ops@example.com", PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("ops@example.com") is None
