"""Integration tests for the authentication endpoints.

Covers:
- Login with cookie and body token
- Login rate limiting
- /auth/me with cookie, Bearer header and no identity
- Logout
- Password reset and password change
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from pmoguard import app as app_module
from pmoguard.service.runtime import get_runtime, reset_runtime_for_tests
from pmoguard.storage.models import TenantRole

EMAIL = "testuser@example.com"
PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user():
    runtime = get_runtime()
    created = runtime.auth.create_user(EMAIL, PASSWORD, name="Test User")
    default = runtime.store.get_tenant_by_slug(runtime.settings.default_tenant_slug)
    runtime.store.add_tenant_member(default.id, created.id, TenantRole.MEMBER)
    return created


def _login(client, email=EMAIL, password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


class TestLogin:
    def test_login_returns_user_tenant_and_token(self, client, user):
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == user.id
        assert data["user"]["email"] == EMAIL
        assert data["tenant"]["slug"] == "default"
        assert data["tenant"]["role"] == "MEMBER"
        assert get_runtime().tokens.verify(data["token"]) == user.id

    def test_login_sets_http_only_cookie(self, client, user):
        response = _login(client)
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith("token=")
        assert "httponly" in cookie
        assert "path=/" in cookie
        assert "max-age=604800" in cookie
        assert "samesite=lax" in cookie

    def test_login_reports_remaining_attempts(self, client, user):
        assert _login(client).headers["x-ratelimit-remaining"] == "4"
        assert _login(client, password="wrong-password").status_code == 401
        assert _login(client).headers["x-ratelimit-remaining"] == "2"

    def test_cross_origin_cookie_is_secure_none(self, client, user, monkeypatch):
        monkeypatch.setenv("COOKIE_CROSS_ORIGIN", "true")
        reset_runtime_for_tests()
        # the reset runtime starts from an empty store
        get_runtime().auth.create_user(EMAIL, PASSWORD)
        cookie = _login(client).headers["set-cookie"].lower()
        assert "samesite=none" in cookie
        assert "secure" in cookie

    @pytest.mark.parametrize(
        "email,password",
        [(EMAIL, "wrong-password"), ("nobody@example.com", PASSWORD), ("not-an-email", PASSWORD)],
    )
    def test_failures_are_generic_401(self, client, user, email, password):
        response = _login(client, email, password)
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "Invalid email or password"
        assert "set-cookie" not in response.headers

    def test_sixth_attempt_is_rate_limited_even_with_valid_credentials(self, client, user):
        for _ in range(5):
            assert _login(client, password="wrong-password").status_code == 401
        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert "Too many login attempts" in response.json()["error"]["message"]
        assert int(response.headers["retry-after"]) > 0

    def test_missing_fields_are_400(self, client):
        response = client.post("/api/auth/login", json={"email": EMAIL})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestMe:
    def test_without_identity_returns_nulls(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 200
        assert response.json()["data"] == {"user": None, "tenant": None, "token": None}

    def test_invalid_token_is_not_401(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 200
        assert response.json()["data"]["user"] is None

    def test_non_ascii_signature_is_anonymous(self, client, user):
        header, payload, _ = get_runtime().tokens.issue(user.id).split(".")
        value = f"Bearer {header}.{payload}.é".encode("latin-1")
        response = client.get("/api/auth/me", headers={"Authorization": value})
        assert response.status_code == 200
        assert response.json()["data"]["user"] is None
        protected = client.get("/api/tenants/my", headers={"Authorization": value})
        assert protected.status_code == 401
        assert protected.json()["error"]["code"] == "invalid_token"

    def test_bearer_header(self, client, user):
        token = _login(client).json()["data"]["token"]
        client.cookies.clear()
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        data = response.json()["data"]
        assert data["user"]["id"] == user.id
        assert data["tenant"]["slug"] == "default"
        assert get_runtime().tokens.verify(data["token"]) == user.id

    def test_cookie(self, client, user):
        token = get_runtime().tokens.issue(user.id)
        client.cookies.clear()
        response = client.get("/api/auth/me", headers={"Cookie": f"token={token}"})
        assert response.json()["data"]["user"]["email"] == EMAIL

    def test_deactivated_user_reads_as_anonymous(self, client, user):
        runtime = get_runtime()
        token = runtime.tokens.issue(user.id)
        runtime.store.set_user_active(user.id, False)
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.json()["data"]["user"] is None


class TestProtectedEndpoints:
    def test_no_identity_is_401(self, client):
        response = client.get("/api/tenants/my")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_bad_token_is_invalid_token(self, client):
        response = client.get("/api/tenants/my", headers={"Authorization": "Bearer a.b.c"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_token_for_deleted_identity_is_401(self, client):
        token = get_runtime().tokens.issue("ghost-user")
        response = client.get("/api/tenants/my", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestLogout:
    def test_logout_clears_cookie(self, client, user):
        _login(client)
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith("token=")
        assert "max-age=0" in cookie


class TestPasswordReset:
    def test_request_body_is_identical_for_unknown_email(self, client, user):
        known = client.post("/api/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_requests_are_rate_limited(self, client, user):
        for _ in range(3):
            assert client.post("/api/auth/forgot-password", json={"email": EMAIL}).status_code == 200
        response = client.post("/api/auth/forgot-password", json={"email": EMAIL})
        assert response.status_code == 429

    def test_reset_flow(self, client, user):
        token = asyncio.run(get_runtime().auth.initiate_password_reset(EMAIL))
        verify = client.get("/api/auth/verify-reset-token", params={"token": token})
        assert verify.json()["data"] == {"valid": True}
        reset = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "BrandNewPass456"}
        )
        assert reset.status_code == 200
        assert _login(client, password="BrandNewPass456").status_code == 200

    def test_bad_token_is_generic_400(self, client, user):
        response = client.post(
            "/api/auth/reset-password", json={"token": "bogus", "new_password": "BrandNewPass456"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid or expired reset token"

    def test_verify_unknown_token(self, client):
        response = client.get("/api/auth/verify-reset-token", params={"token": "bogus"})
        assert response.json()["data"] == {"valid": False}

    def test_reset_clears_failed_login_count(self, client, user):
        for _ in range(5):
            assert _login(client, password="wrong-password").status_code == 401
        token = asyncio.run(get_runtime().auth.initiate_password_reset(EMAIL))
        reset = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "BrandNewPass456"}
        )
        assert reset.status_code == 200
        assert _login(client, password="BrandNewPass456").status_code == 200


class TestPasswordChange:
    def _headers(self, user):
        return {"Authorization": f"Bearer {get_runtime().tokens.issue(user.id)}"}

    def test_change_requires_current_password(self, client, user):
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": "wrong-password", "new_password": "BrandNewPass456"},
            headers=self._headers(user),
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "current password is incorrect"
        assert _login(client).status_code == 200

    def test_change_replaces_password(self, client, user):
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass456"},
            headers=self._headers(user),
        )
        assert response.json()["data"] == {"status": "changed"}
        assert _login(client).status_code == 401
        assert _login(client, password="BrandNewPass456").status_code == 200

    def test_wrong_guesses_are_rate_limited(self, client, user):
        body = {"current_password": "wrong-password", "new_password": "BrandNewPass456"}
        for _ in range(5):
            assert client.post("/api/auth/password/change", json=body, headers=self._headers(user)).status_code == 401
        response = client.post("/api/auth/password/change", json=body, headers=self._headers(user))
        assert response.status_code == 429

    def test_requires_identity(self, client):
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass456"},
        )
        assert response.status_code == 401
