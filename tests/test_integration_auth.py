"""End-to-end tests for the auth API over the FastAPI test client."""

import pytest
from fastapi.testclient import TestClient

import propauth.app as app_module
from propauth.service.runtime import get_runtime
from propauth.storage.models import Role, User, UserStatus

PASSWORD = "Correct#Horse9"
NEW_PASSWORD = "Brand#New42"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _seed_user(email, *, role=Role.TENANT, phone=None, status=UserStatus.ACTIVE):
    runtime = get_runtime()
    user = User.new(
        email=email,
        password_hash=runtime.auth.hasher.hash(PASSWORD),
        role=role,
        phone=phone,
        status=status,
    )
    user.email_verified = True
    return runtime.store.create_user(user)


def _login(client, email, password=PASSWORD, **extra):
    response = client.post("/v1/auth/login", json={"email": email, "password": password, **extra})
    assert response.status_code == 200, response.text
    return response.json()["data"]


class TestRegistrationFlow:
    def test_register_verify_login(self, client, runtime_notifier):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "Flow@Example.com",
                "password": PASSWORD,
                "first_name": "Flo",
                "role": "landlord",
            },
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["status"] == "pending_verification"
        assert body["data"]["role"] == "landlord"
        assert "password_hash" not in body["data"]

        blocked = client.post("/v1/auth/login", json={"email": "flow@example.com", "password": PASSWORD})
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "account_not_verified"

        token = runtime_notifier.verification_emails[-1]["token"]
        verified = client.get("/v1/auth/verify-email", params={"token": token})
        assert verified.status_code == 200
        assert verified.json()["data"]["email_verified"] is True

        data = _login(client, "flow@example.com")
        assert data["token_type"] == "Bearer"
        assert data["user"]["status"] == "active"
        assert "properties:create" in data["permissions"]

    def test_staff_role_not_self_service(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "agent@example.com", "password": PASSWORD, "role": "agent"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_duplicate_registration(self, client, runtime_notifier):
        payload = {"email": "twice@example.com", "password": PASSWORD}
        assert client.post("/v1/auth/register", json=payload).status_code == 201

        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "weak@example.com", "password": "weakpass"}
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["field"] == "password"

    def test_resend_verification_is_generic(self, client, runtime_notifier):
        response = client.post(
            "/v1/auth/resend-verification", json={"type": "email", "email": "ghost@example.com"}
        )

        assert response.status_code == 200
        assert runtime_notifier.verification_emails == []


class TestLoginFlow:
    def test_login_me_refresh_logout(self, client):
        user = _seed_user("cycle@example.com")
        data = _login(client, "cycle@example.com", device_info={"device_name": "Pixel 8"})

        me = client.get("/v1/auth/me", headers=_bearer(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["id"] == user.id
        assert me.json()["data"]["session_id"] == data["session_id"]

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 200
        new = refreshed.json()["data"]
        assert new["refresh_token"] != data["refresh_token"]

        logout = client.post(
            "/v1/auth/logout",
            headers={**_bearer(new["access_token"]), "X-Refresh-Token": new["refresh_token"]},
        )
        assert logout.status_code == 200

        after = client.get("/v1/auth/me", headers=_bearer(new["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "token_revoked"

    def test_refresh_reuse_is_rejected(self, client):
        _seed_user("reuse@example.com")
        data = _login(client, "reuse@example.com")
        assert client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}).status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})

        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_revoked"

    def test_bad_credentials(self, client):
        _seed_user("known@example.com")

        wrong = client.post("/v1/auth/login", json={"email": "known@example.com", "password": "Wrong#Pass1"})
        unknown = client.post("/v1/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_423(self, client):
        _seed_user("locked@example.com")
        for _ in range(5):
            response = client.post(
                "/v1/auth/login", json={"email": "locked@example.com", "password": "Wrong#Pass1"}
            )
            assert response.status_code == 401

        response = client.post("/v1/auth/login", json={"email": "locked@example.com", "password": PASSWORD})

        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert "locked_until" in error["details"]

    def test_login_rate_limit(self, client):
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            response = client.post(
                "/v1/auth/login", json={"email": "flood@example.com", "password": PASSWORD}
            )
            assert response.status_code == 401

        response = client.post("/v1/auth/login", json={"email": "flood@example.com", "password": PASSWORD})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_without_tokens_still_succeeds(self, client):
        assert client.post("/v1/auth/logout").status_code == 200


class TestPhoneLogin:
    def test_otp_login(self, client, runtime_notifier):
        _seed_user("phone@example.com", phone="+254711000222")

        sent = client.post("/v1/auth/login/phone", json={"phone": "+254 711 000 222"})
        assert sent.status_code == 200
        sent_data = sent.json()["data"]
        assert sent_data["phone"].endswith("0222")
        assert "254711" not in sent_data["phone"]
        assert "code" not in sent_data

        code = runtime_notifier.last_otp("+254711000222")
        verified = client.post(
            "/v1/auth/otp/verify", json={"phone": "+254711000222", "code": code}
        )

        assert verified.status_code == 200
        assert verified.json()["data"]["user"]["phone_verified"] is True

    def test_wrong_code(self, client, runtime_notifier):
        _seed_user("phone@example.com", phone="+254711000333")
        client.post("/v1/auth/login/phone", json={"phone": "+254711000333"})
        code = runtime_notifier.last_otp("+254711000333")
        wrong = "000000" if code != "000000" else "111111"

        response = client.post("/v1/auth/otp/verify", json={"phone": "+254711000333", "code": wrong})

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "otp_invalid"
        assert error["details"]["attempts_left"] == get_runtime().settings.otp_max_attempts - 1

    def test_sms_outage_is_503(self, client, runtime_notifier):
        _seed_user("phone@example.com", phone="+254711000444")
        runtime_notifier.fail = True

        response = client.post("/v1/auth/login/phone", json={"phone": "+254711000444"})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"


class TestPasswordFlows:
    def test_reset(self, client, runtime_notifier):
        _seed_user("forgot@example.com")

        requested = client.post("/v1/auth/password-reset/request", json={"email": "forgot@example.com"})
        unknown = client.post("/v1/auth/password-reset/request", json={"email": "nobody@example.com"})
        assert requested.status_code == unknown.status_code == 200
        assert requested.json()["data"] == unknown.json()["data"]

        token = runtime_notifier.reset_emails[-1]["token"]
        confirmed = client.post(
            "/v1/auth/password-reset/confirm", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert confirmed.status_code == 200

        _login(client, "forgot@example.com", password=NEW_PASSWORD)
        replay = client.post(
            "/v1/auth/password-reset/confirm", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_invalid"

    def test_change(self, client):
        _seed_user("change@example.com")
        data = _login(client, "change@example.com")

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_bearer(data["access_token"]),
        )

        assert response.status_code == 200
        _login(client, "change@example.com", password=NEW_PASSWORD)


class TestSessions:
    def test_list_and_terminate(self, client):
        _seed_user("devices@example.com")
        first = _login(client, "devices@example.com")
        second = _login(client, "devices@example.com")

        listed = client.get("/v1/auth/sessions", headers=_bearer(first["access_token"]))
        sessions = listed.json()["data"]["sessions"]
        assert len(sessions) == 2
        assert [s["session_id"] for s in sessions if s["current"]] == [first["session_id"]]

        killed = client.delete(
            f"/v1/auth/sessions/{second['session_id']}", headers=_bearer(first["access_token"])
        )
        assert killed.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(second["access_token"])).status_code == 401

        again = client.delete(
            f"/v1/auth/sessions/{second['session_id']}", headers=_bearer(first["access_token"])
        )
        assert again.status_code == 404

    def test_logout_all(self, client):
        _seed_user("everywhere@example.com")
        first = _login(client, "everywhere@example.com")
        _login(client, "everywhere@example.com")

        response = client.post("/v1/auth/logout-all", headers=_bearer(first["access_token"]))

        assert response.json()["data"]["sessions_terminated"] == 2
        assert client.get("/v1/auth/me", headers=_bearer(first["access_token"])).status_code == 401


class TestAdministration:
    def test_admin_can_inspect_and_unlock(self, client):
        _seed_user("root@example.com", role=Role.SUPER_ADMIN)
        victim = _seed_user("victim@example.com")
        admin = _login(client, "root@example.com")
        for _ in range(5):
            client.post("/v1/auth/login", json={"email": "victim@example.com", "password": "Wrong#Pass1"})

        lock = client.get(f"/v1/auth/users/{victim.id}/lock", headers=_bearer(admin["access_token"]))
        assert lock.status_code == 200
        assert lock.json()["data"]["is_locked"] is True

        unlocked = client.post(
            f"/v1/auth/users/{victim.id}/unlock", headers=_bearer(admin["access_token"])
        )
        assert unlocked.status_code == 200
        _login(client, "victim@example.com")

    def test_tenant_cannot_administer(self, client):
        tenant = _seed_user("tenant@example.com")
        data = _login(client, "tenant@example.com")

        response = client.post(f"/v1/auth/users/{tenant.id}/unlock", headers=_bearer(data["access_token"]))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestRBACEndpoints:
    def test_my_permissions_and_check(self, client):
        _seed_user("agent@example.com", role=Role.AGENT)
        data = _login(client, "agent@example.com")
        headers = _bearer(data["access_token"])

        mine = client.get("/v1/rbac/permissions/me", headers=headers).json()["data"]
        assert mine["role"] == "agent"
        assert "tenants:create" in mine["permissions"]

        check = client.post(
            "/v1/rbac/permissions/check", json={"permission": "properties:delete"}, headers=headers
        )
        assert check.json()["data"]["allowed"] is False

    def test_hierarchy_and_roles(self, client):
        _seed_user("viewer@example.com")
        headers = _bearer(_login(client, "viewer@example.com")["access_token"])

        hierarchy = client.get("/v1/rbac/hierarchy", headers=headers).json()["data"]
        roles = client.get("/v1/rbac/roles", headers=headers).json()["data"]["roles"]

        assert hierarchy["levels"]["super_admin"] == 1
        assert hierarchy["can_manage"]["landlord"] == ["caretaker", "tenant"]
        assert "qr:scan" in roles["caretaker"]

    def test_override_lifecycle(self, client):
        _seed_user("root@example.com", role=Role.SUPER_ADMIN)
        tenant = _seed_user("tenant@example.com")
        admin_headers = _bearer(_login(client, "root@example.com")["access_token"])
        tenant_headers = _bearer(_login(client, "tenant@example.com")["access_token"])

        granted = client.post(
            f"/v1/rbac/users/{tenant.id}/permissions",
            json={"permission": "reports:read", "effect": "grant"},
            headers=admin_headers,
        )
        assert granted.status_code == 200
        check = client.post(
            "/v1/rbac/permissions/check", json={"permission": "reports:read"}, headers=tenant_headers
        )
        assert check.json()["data"]["allowed"] is True

        removed = client.delete(
            f"/v1/rbac/users/{tenant.id}/permissions",
            params={"permission": "reports:read"},
            headers=admin_headers,
        )
        assert removed.status_code == 200
        check = client.post(
            "/v1/rbac/permissions/check", json={"permission": "reports:read"}, headers=tenant_headers
        )
        assert check.json()["data"]["allowed"] is False

    def test_override_for_unknown_user(self, client):
        _seed_user("root@example.com", role=Role.SUPER_ADMIN)
        headers = _bearer(_login(client, "root@example.com")["access_token"])

        response = client.post(
            "/v1/rbac/users/missing/permissions",
            json={"permission": "reports:read", "effect": "grant"},
            headers=headers,
        )

        assert response.status_code == 404


class TestHealthAndAliases:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["directory"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_legacy_route_is_rewritten(self, client):
        _seed_user("landlord@example.com", role=Role.LANDLORD)
        data = _login(client, "landlord@example.com")

        response = client.get("/v1/landlord/auth/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 200
        assert response.headers["Deprecation"] == "true"
        assert response.headers["X-Original-Route"] == "/v1/landlord/auth/me"
        assert response.headers["X-Unified-Route"] == "/v1/auth/me"

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["API-Version"] == app_module.__version__

    def test_api_is_versioned_under_v1(self, client):
        _seed_user("prefix@example.com")

        assert client.post(
            "/v1/auth/login", json={"email": "prefix@example.com", "password": PASSWORD}
        ).status_code == 200
        assert client.post(
            "/auth/login", json={"email": "prefix@example.com", "password": PASSWORD}
        ).status_code == 404
