"""Integration tests for tenants, platform administration, projects and tasks."""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from pmoguard import app as app_module
from pmoguard.api.deps import (
    get_current_user,
    get_required_tenant,
    require_any_role,
    require_role,
)
from pmoguard.api.error_handling import register_exception_handlers
from pmoguard.service.audit import RecordingAuditSink
from pmoguard.service.runtime import get_runtime
from pmoguard.storage.models import GlobalRole, TenantRole


@pytest.fixture
def client():
    return TestClient(app_module.app)


class World:
    """Default tenant plus a second tenant, with users of every role."""

    def __init__(self):
        self.runtime = get_runtime()
        store = self.runtime.store
        self.default = store.get_tenant_by_slug("default")
        self.acme = store.create_tenant("acme", "Acme")
        self.users = {}
        for name, role in (
            ("owner", GlobalRole.USER),
            ("admin", GlobalRole.USER),
            ("member", GlobalRole.USER),
            ("member2", GlobalRole.USER),
            ("viewer", GlobalRole.USER),
            ("stranger", GlobalRole.USER),
            ("operator", GlobalRole.ADMIN),
            ("root", GlobalRole.SUPER_ADMIN),
        ):
            self.users[name] = store.create_user(f"{name}@example.com", role=role)
        for name, role in (
            ("owner", TenantRole.OWNER),
            ("admin", TenantRole.ADMIN),
            ("member", TenantRole.MEMBER),
            ("member2", TenantRole.MEMBER),
            ("viewer", TenantRole.VIEWER),
        ):
            store.add_tenant_member(self.default.id, self.users[name].id, role)
        store.add_tenant_member(self.acme.id, self.users["stranger"].id, TenantRole.OWNER)

    def headers(self, name, tenant=None):
        token = self.runtime.tokens.issue(self.users[name].id)
        headers = {"Authorization": f"Bearer {token}"}
        if tenant is not None:
            headers["X-Tenant-ID"] = tenant
        return headers

    def uid(self, name):
        return self.users[name].id


@pytest.fixture
def world():
    return World()


class TestTenantEndpoints:
    def test_my_tenants(self, client, world):
        response = client.get("/api/tenants/my", headers=world.headers("stranger"))
        items = response.json()["data"]["items"]
        assert [(t["slug"], t["role"]) for t in items] == [("acme", "OWNER")]

    def test_current_tenant_for_member(self, client, world):
        response = client.get("/api/tenants/current", headers=world.headers("viewer"))
        data = response.json()["data"]
        assert data["slug"] == "default"
        assert data["role"] == "VIEWER"

    def test_current_tenant_without_membership(self, client, world):
        response = client.get("/api/tenants/current", headers=world.headers("stranger"))
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "no access to this tenant"

    def test_header_selects_tenant(self, client, world):
        response = client.get("/api/tenants/current", headers=world.headers("stranger", "acme"))
        assert response.json()["data"]["id"] == world.acme.id

    def test_unknown_tenant_header_is_missing_context(self, client, world):
        response = client.get("/api/tenants/current", headers=world.headers("owner", "initech"))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "tenant_context_missing"

    def test_switch_requires_membership_and_is_audited(self, client, world):
        sink = RecordingAuditSink()
        world.runtime.audit = sink
        denied = client.post(f"/api/tenants/switch/{world.acme.id}", headers=world.headers("owner"))
        assert denied.status_code == 403
        allowed = client.post(f"/api/tenants/switch/{world.acme.id}", headers=world.headers("stranger"))
        assert allowed.status_code == 200
        assert allowed.json()["data"]["role"] == "OWNER"
        assert sink.actions() == ["tenant_switch", "tenant_switch"]
        assert [e.outcome for e in sink.events] == ["denied", "allowed"]

    def test_operator_may_switch_anywhere(self, client, world):
        response = client.post(f"/api/tenants/switch/{world.acme.id}", headers=world.headers("operator"))
        assert response.status_code == 200
        assert response.json()["data"]["role"] is None

    def test_tenant_user_management(self, client, world):
        headers = world.headers("admin")
        added = client.post(
            "/api/tenants/current/users",
            json={"user_id": world.uid("stranger"), "role": "MEMBER"},
            headers=headers,
        )
        assert added.status_code == 201
        duplicate = client.post(
            "/api/tenants/current/users", json={"user_id": world.uid("stranger")}, headers=headers
        )
        assert duplicate.status_code == 409
        updated = client.put(
            f"/api/tenants/current/users/{world.uid('stranger')}", json={"role": "VIEWER"}, headers=headers
        )
        assert updated.json()["data"]["role"] == "VIEWER"
        listed = client.get("/api/tenants/current/users", headers=headers).json()["data"]["items"]
        assert world.uid("stranger") in {m["user_id"] for m in listed}
        removed = client.delete(f"/api/tenants/current/users/{world.uid('stranger')}", headers=headers)
        assert removed.status_code == 200

    def test_member_cannot_manage_tenant_users(self, client, world):
        response = client.get("/api/tenants/current/users", headers=world.headers("member"))
        assert response.status_code == 403

    def test_operator_bypasses_tenant_roles(self, client, world):
        response = client.get("/api/tenants/current/users", headers=world.headers("operator"))
        assert response.status_code == 200


class TestAdminEndpoints:
    def test_user_cannot_create_tenant(self, client, world):
        response = client.post("/api/admin/tenants", json={"slug": "initech"}, headers=world.headers("owner"))
        assert response.status_code == 403

    def test_operator_creates_tenant_and_becomes_owner(self, client, world):
        response = client.post(
            "/api/admin/tenants",
            json={"slug": "Initech", "name": "Initech", "domain_aliases": ["pm.initech.com"]},
            headers=world.headers("operator"),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["slug"] == "initech"
        assert data["role"] == "OWNER"
        duplicate = client.post("/api/admin/tenants", json={"slug": "initech"}, headers=world.headers("operator"))
        assert duplicate.status_code == 409

    def test_invalid_slug_rejected(self, client, world):
        response = client.post("/api/admin/tenants", json={"slug": "no spaces"}, headers=world.headers("operator"))
        assert response.status_code == 400

    def test_only_super_admin_grants_super_admin(self, client, world):
        target = world.uid("member")
        denied = client.put(
            f"/api/admin/users/{target}/role", json={"role": "SUPER_ADMIN"}, headers=world.headers("operator")
        )
        assert denied.status_code == 403
        granted = client.put(
            f"/api/admin/users/{target}/role", json={"role": "SUPER_ADMIN"}, headers=world.headers("root")
        )
        assert granted.json()["data"]["role"] == "SUPER_ADMIN"

    def test_operator_promotes_to_admin(self, client, world):
        response = client.put(
            f"/api/admin/users/{world.uid('member')}/role", json={"role": "ADMIN"}, headers=world.headers("operator")
        )
        assert response.status_code == 200

    def test_domain_alias_needs_super_admin(self, client, world):
        path = f"/api/admin/tenants/{world.acme.id}/domains"
        denied = client.post(path, params={"domain": "acme.example.com"}, headers=world.headers("operator"))
        assert denied.status_code == 403
        added = client.post(path, params={"domain": "acme.example.com"}, headers=world.headers("root"))
        assert added.json()["data"]["domain_aliases"] == ["acme.example.com"]
        # the alias now resolves the tenant from the Host header alone
        current = client.get(
            "/api/tenants/current",
            headers={**world.headers("stranger"), "Host": "acme.example.com"},
        )
        assert current.json()["data"]["slug"] == "acme"


class TestProjectEndpoints:
    def _create(self, client, world, name="member", **body):
        payload = {"name": "Launch", "visibility": "TEAM", **body}
        return client.post("/api/projects", json=payload, headers=world.headers(name))

    def test_viewer_cannot_create(self, client, world):
        assert self._create(client, world, "viewer").status_code == 403

    def test_creator_is_admin(self, client, world):
        response = self._create(client, world)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["owner_id"] == world.uid("member")
        assert data["access_level"] == "ADMIN"

    def test_legacy_flag_becomes_tenant_visibility(self, client, world):
        response = self._create(client, world, visibility="PRIVATE", is_shared_with_tenant=True)
        assert response.json()["data"]["visibility"] == "TENANT"
        project_id = response.json()["data"]["id"]
        seen = client.get(f"/api/projects/{project_id}", headers=world.headers("viewer"))
        assert seen.json()["data"]["access_level"] == "VIEW"

    def test_team_project_hidden_from_non_members(self, client, world):
        project_id = self._create(client, world).json()["data"]["id"]
        response = client.get(f"/api/projects/{project_id}", headers=world.headers("member2"))
        assert response.status_code == 404
        listed = client.get("/api/projects", headers=world.headers("member2")).json()["data"]["items"]
        assert listed == []

    def test_project_hidden_across_tenants(self, client, world):
        project_id = self._create(client, world).json()["data"]["id"]
        response = client.get(f"/api/projects/{project_id}", headers=world.headers("stranger", "acme"))
        assert response.status_code == 404

    def test_membership_grants_access(self, client, world):
        project_id = self._create(client, world).json()["data"]["id"]
        owner = world.headers("member")
        added = client.post(
            f"/api/projects/{project_id}/members",
            json={"user_id": world.uid("member2"), "role": "EDIT"},
            headers=owner,
        )
        assert added.status_code == 201
        seen = client.get(f"/api/projects/{project_id}", headers=world.headers("member2"))
        assert seen.json()["data"]["access_level"] == "EDIT"
        patch = client.patch(
            f"/api/projects/{project_id}", json={"visibility": "PRIVATE"}, headers=world.headers("member2")
        )
        assert patch.status_code == 403
        members = client.get(f"/api/projects/{project_id}/members", headers=world.headers("member2"))
        assert [m["user_id"] for m in members.json()["data"]["items"]] == [world.uid("member2")]

    def test_bulk_add_and_role_change(self, client, world):
        project_id = self._create(client, world).json()["data"]["id"]
        owner = world.headers("member")
        bulk = client.post(
            f"/api/projects/{project_id}/members/bulk",
            json={"members": [{"user_id": world.uid("viewer")}, {"user_id": world.uid("admin"), "role": "ADMIN"}]},
            headers=owner,
        )
        assert bulk.status_code == 201
        assert {m["role"] for m in bulk.json()["data"]["items"]} == {"VIEW_ONLY", "ADMIN"}
        changed = client.put(
            f"/api/projects/{project_id}/members/{world.uid('viewer')}", json={"role": "EDIT"}, headers=owner
        )
        assert changed.json()["data"]["role"] == "EDIT"
        removed = client.delete(f"/api/projects/{project_id}/members/{world.uid('viewer')}", headers=owner)
        assert removed.status_code == 200

    def test_cannot_add_user_outside_tenant(self, client, world):
        project_id = self._create(client, world).json()["data"]["id"]
        response = client.post(
            f"/api/projects/{project_id}/members",
            json={"user_id": world.uid("stranger")},
            headers=world.headers("member"),
        )
        assert response.status_code == 400


class TestTaskEndpoints:
    @pytest.fixture
    def project_id(self, client, world):
        project_id = client.post(
            "/api/projects", json={"name": "Ops", "visibility": "TEAM"}, headers=world.headers("member")
        ).json()["data"]["id"]
        client.post(
            f"/api/projects/{project_id}/members/bulk",
            json={
                "members": [
                    {"user_id": world.uid("member2"), "role": "EDIT"},
                    {"user_id": world.uid("viewer"), "role": "VIEW_ONLY"},
                ]
            },
            headers=world.headers("member"),
        )
        return project_id

    def test_create_task_with_assignees(self, client, world, project_id):
        response = client.post(
            f"/api/projects/{project_id}/tasks",
            json={"title": "Runbook", "assignees": [world.uid("member"), world.uid("viewer")]},
            headers=world.headers("member2"),
        )
        assert response.status_code == 201
        assert response.json()["data"]["assignees"] == [world.uid("member"), world.uid("viewer")]

    def test_invalid_assignees_listed(self, client, world, project_id):
        response = client.post(
            f"/api/projects/{project_id}/tasks",
            json={"title": "Audit", "assignees": [world.uid("admin")]},
            headers=world.headers("member"),
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_assignees"
        assert error["details"]["invalid_assignees"] == [world.uid("admin")]

    def test_view_only_member_cannot_create(self, client, world, project_id):
        response = client.post(
            f"/api/projects/{project_id}/tasks", json={"title": "x"}, headers=world.headers("viewer")
        )
        assert response.status_code == 403

    def test_subtask_of_subtask_is_invalid_parent(self, client, world, project_id):
        headers = world.headers("member")
        parent = client.post(f"/api/projects/{project_id}/tasks", json={"title": "Epic"}, headers=headers)
        child = client.post(
            f"/api/projects/{project_id}/tasks",
            json={"title": "Story", "parent_task_id": parent.json()["data"]["id"]},
            headers=headers,
        )
        assert child.status_code == 201
        grandchild = client.post(
            f"/api/projects/{project_id}/tasks",
            json={"title": "Step", "parent_task_id": child.json()["data"]["id"]},
            headers=headers,
        )
        assert grandchild.status_code == 400
        assert grandchild.json()["error"]["code"] == "invalid_parent"

    def test_reassign_and_list(self, client, world, project_id):
        headers = world.headers("member")
        task_id = client.post(
            f"/api/projects/{project_id}/tasks", json={"title": "Deploy"}, headers=headers
        ).json()["data"]["id"]
        updated = client.put(
            f"/api/tasks/{task_id}/assignees", json={"assignees": [world.uid("member2")]}, headers=headers
        )
        assert updated.json()["data"]["assignees"] == [world.uid("member2")]
        rejected = client.put(
            f"/api/tasks/{task_id}/assignees", json={"assignees": [world.uid("operator")]}, headers=headers
        )
        assert rejected.status_code == 400
        listed = client.get(f"/api/projects/{project_id}/tasks", headers=world.headers("viewer"))
        assert [t["title"] for t in listed.json()["data"]["items"]] == ["Deploy"]


def _guard_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/users-only")
    async def users_only(user=Depends(require_role(GlobalRole.USER))):
        return {"id": user.id}

    @app.get("/operators")
    async def operators(user=Depends(require_any_role(GlobalRole.ADMIN, GlobalRole.SUPER_ADMIN))):
        return {"id": user.id}

    @app.get("/whoami")
    async def whoami(user=Depends(get_current_user), tenant=Depends(get_required_tenant)):
        return {"id": user.id, "tenant": tenant.slug}

    return app


class TestGuardDependencies:
    @pytest.fixture
    def guard_client(self):
        return TestClient(_guard_app())

    def test_require_role_admin_short_circuit(self, guard_client, world):
        assert guard_client.get("/users-only", headers=world.headers("owner")).status_code == 200
        assert guard_client.get("/users-only", headers=world.headers("operator")).status_code == 200
        assert guard_client.get("/users-only", headers=world.headers("root")).status_code == 403

    def test_require_any_role(self, guard_client, world):
        assert guard_client.get("/operators", headers=world.headers("owner")).status_code == 403
        assert guard_client.get("/operators", headers=world.headers("root")).status_code == 200

    def test_current_user_and_tenant(self, guard_client, world):
        response = guard_client.get("/whoami", headers=world.headers("owner"))
        assert response.json() == {"id": world.uid("owner"), "tenant": "default"}
        missing = guard_client.get("/whoami", headers=world.headers("owner", "nope"))
        assert missing.status_code == 400


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_echoed(self, client):
        response = client.get("/api/auth/me", headers={"X-Request-ID": "trace-123"})
        assert response.headers["x-request-id"] == "trace-123"
        assert response.json()["request_id"]

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/api/tenants/my", headers={"X-Request-ID": "trace-456"})
        assert response.json()["request_id"] == "trace-456"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert "no-store" in response.headers["cache-control"]
