"""End-to-end HTTP tests against the FastAPI app with the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from tenantauth.app import app
from tenantauth.service.runtime import get_runtime

OWNER_PHONE = "9876543210"
OWNER_PASSWORD = "Owner@Pass1"
STAFF_PHONE = "9123456780"
STAFF_PASSWORD = "Staff@Pass1"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def notifier(notifier):
    get_runtime().accounts.notifier = notifier
    return notifier


def _register(client, phone=OWNER_PHONE, facility="City Clinic"):
    return client.post(
        "/v1/auth/register",
        json={
            "facility_name": facility,
            "owner_name": "Asha Rao",
            "phone": phone,
            "password": OWNER_PASSWORD,
        },
    )


def _login(client, phone=OWNER_PHONE, password=OWNER_PASSWORD):
    return client.post("/v1/auth/login", json={"phone": phone, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner_session(client):
    assert _register(client).status_code == 201
    body = _login(client).json()["data"]
    return body


def _create_staff(client, session, *, phone=STAFF_PHONE, role="doctor"):
    branch_id = session["user"]["primary_branch_id"]
    return client.post(
        "/v1/users",
        headers=_bearer(session["access_token"]),
        json={
            "phone": phone,
            "name": "Ravi Kumar",
            "password": STAFF_PASSWORD,
            "role": role,
            "branch_ids": [branch_id],
        },
    )


class TestRegistration:
    def test_register_returns_201_envelope(self, client):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["tenant_id"]
        assert body["data"]["message"] == (
            "Registration successful. Your 30-day free trial has started."
        )
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_duplicate_phone_conflicts(self, client):
        _register(client)
        response = _register(client, facility="Another Clinic")
        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "Phone number is already registered",
            "details": None,
        }

    def test_invalid_phone_is_field_error(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "facility_name": "City Clinic",
                "owner_name": "Asha",
                "phone": "12345",
                "password": OWNER_PASSWORD,
            },
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Validation failed"
        assert [d["field"] for d in error["details"]] == ["phone"]

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "facility_name": "City Clinic",
                "owner_name": "Asha",
                "phone": OWNER_PHONE,
                "password": "password",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_rate_limited_per_ip(self, client):
        for index in range(3):
            _register(client, phone=f"900000000{index}", facility=f"Clinic {index}")
        response = _register(client, phone="9000000009", facility="Clinic 9")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"


class TestLoginFlow:
    def test_login_returns_tokens_and_profile(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert len(data["refresh_token"]) == 128
        assert data["user"]["role"] == "super_admin"
        assert data["user"]["role_name"] == "Super Admin"
        assert data["user"]["branches"][0]["branch_code"] == "MAIN"
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_bad_password_is_generic(self, client):
        _register(client)
        response = _login(client, password="Wrong@Pass1")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_unknown_phone_is_generic(self, client):
        response = _login(client, phone="9999999999")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_malformed_tenant_id_is_field_error(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login",
            json={"phone": OWNER_PHONE, "password": OWNER_PASSWORD, "tenant_id": "abc"},
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert [d["field"] for d in error["details"]] == ["tenant_id"]

    def test_tenant_id_is_matched_case_insensitively(self, client):
        tenant_id = _register(client).json()["data"]["tenant_id"]
        response = client.post(
            "/v1/auth/login",
            json={
                "phone": OWNER_PHONE,
                "password": OWNER_PASSWORD,
                "tenant_id": tenant_id.upper(),
            },
        )
        assert response.status_code == 200

    def test_login_rate_limit(self, client):
        _register(client)
        for _ in range(10):
            _login(client, password="Wrong@Pass1")
        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["details"]["retry_after_seconds"] > 0

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Missing authentication token"

    def test_me_rejects_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers=_bearer("not-a-token"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me(self, client, owner_session):
        response = client.get("/v1/auth/me", headers=_bearer(owner_session["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["phone"] == OWNER_PHONE

    def test_refresh_and_logout(self, client, owner_session):
        refresh_token = owner_session["refresh_token"]
        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["access_token"]
        assert refreshed.json()["data"]["refresh_token"] is None

        logout = client.post(
            "/v1/auth/logout",
            json={"refresh_token": refresh_token},
            headers=_bearer(owner_session["access_token"]),
        )
        assert logout.json()["data"]["message"] == "Logged out successfully"

        again = client.post("/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert again.status_code == 401
        assert again.json()["error"]["message"] == "Refresh token has been revoked"

    def test_logout_unknown_token_still_succeeds(self, client):
        response = client.post("/v1/auth/logout", json={"refresh_token": "f" * 128})
        assert response.status_code == 200

    def test_logout_all(self, client, owner_session):
        _login(client)
        response = client.post(
            "/v1/auth/logout-all", headers=_bearer(owner_session["access_token"])
        )
        assert response.json()["data"] == {
            "message": "Logged out from all devices",
            "revoked": 2,
        }


class TestOtpAndPasswords:
    def test_otp_request_and_verify(self, client, notifier):
        _register(client)
        response = client.post(
            "/v1/auth/otp/request", json={"phone": OWNER_PHONE, "purpose": "verify_phone"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "OTP sent successfully", "expires_in": 600}

        bad_code = "000000" if notifier.last_code() != "000000" else "111111"
        wrong = client.post(
            "/v1/auth/otp/verify",
            json={"phone": OWNER_PHONE, "code": bad_code, "purpose": "verify_phone"},
        )
        assert wrong.status_code == 200
        assert wrong.json()["data"] == {"valid": False, "message": "Invalid OTP"}

        ok = client.post(
            "/v1/auth/otp/verify",
            json={"phone": OWNER_PHONE, "code": notifier.last_code(), "purpose": "verify_phone"},
        )
        assert ok.status_code == 200
        assert ok.json()["data"] == {"valid": True, "message": "OTP verified successfully"}

    def test_otp_unknown_phone_looks_the_same(self, client, notifier):
        response = client.post(
            "/v1/auth/otp/request", json={"phone": "9555555555", "purpose": "login"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["expires_in"] == 600
        assert notifier.sent == []

    def test_otp_request_throttled_per_minute(self, client, notifier):
        payload = {"phone": OWNER_PHONE, "purpose": "register"}
        assert client.post("/v1/auth/otp/request", json=payload).status_code == 200
        response = client.post("/v1/auth/otp/request", json=payload)
        assert response.status_code == 429
        assert response.json()["error"]["message"] == "Please wait before requesting another OTP."

    def test_unknown_purpose_rejected(self, client):
        response = client.post(
            "/v1/auth/otp/request", json={"phone": OWNER_PHONE, "purpose": "sudo"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "purpose"

    def test_password_reset(self, client, notifier):
        _register(client)
        client.post("/v1/auth/otp/request", json={"phone": OWNER_PHONE, "purpose": "reset_password"})
        response = client.post(
            "/v1/auth/password/reset",
            json={"phone": OWNER_PHONE, "otp": notifier.last_code(), "new_password": "Fresh@Pass2"},
        )
        assert response.status_code == 200
        assert _login(client, password="Fresh@Pass2").status_code == 200
        assert _login(client).status_code == 401

    def test_password_change(self, client, owner_session):
        headers = _bearer(owner_session["access_token"])
        wrong = client.post(
            "/v1/auth/password/change",
            headers=headers,
            json={"current_password": "Nope@Pass1", "new_password": "Fresh@Pass2"},
        )
        assert wrong.status_code == 400
        assert wrong.json()["error"]["message"] == "Current password is incorrect"

        reused = client.post(
            "/v1/auth/password/change",
            headers=headers,
            json={"current_password": OWNER_PASSWORD, "new_password": OWNER_PASSWORD},
        )
        assert reused.status_code == 400

        ok = client.post(
            "/v1/auth/password/change",
            headers=headers,
            json={"current_password": OWNER_PASSWORD, "new_password": "Fresh@Pass2"},
        )
        assert ok.json()["data"]["message"] == "Password changed successfully"


class TestStaffEndpoints:
    def test_owner_creates_and_manages_staff(self, client, owner_session):
        headers = _bearer(owner_session["access_token"])
        created = _create_staff(client, owner_session)
        assert created.status_code == 201
        staff_id = created.json()["data"]["id"]
        assert created.json()["data"]["role"] == "doctor"

        promoted = client.patch(
            f"/v1/users/{staff_id}/role", headers=headers, json={"role": "branch_admin"}
        )
        assert promoted.json()["data"]["role"] == "branch_admin"

        unlocked = client.post(f"/v1/users/{staff_id}/unlock", headers=headers)
        assert unlocked.json()["data"]["message"] == "Account unlocked"

        _login(client, phone=STAFF_PHONE, password=STAFF_PASSWORD)
        deleted = client.delete(f"/v1/users/{staff_id}", headers=headers)
        assert deleted.json()["data"] == {
            "deleted": True,
            "user_id": staff_id,
            "revoked_sessions": 1,
        }
        assert _login(client, phone=STAFF_PHONE, password=STAFF_PASSWORD).status_code == 401

    def test_missing_permission_is_403(self, client, owner_session):
        _create_staff(client, owner_session, role="nurse")
        nurse = _login(client, phone=STAFF_PHONE, password=STAFF_PASSWORD).json()["data"]
        response = _create_staff(client, nurse, phone="9123456781", role="receptionist")
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "Insufficient permissions",
            "details": {"required": "users:create"},
        }

    def test_branch_admin_cannot_create_peer(self, client, owner_session):
        _create_staff(client, owner_session, role="branch_admin")
        admin = _login(client, phone=STAFF_PHONE, password=STAFF_PASSWORD).json()["data"]
        response = _create_staff(client, admin, phone="9123456781", role="branch_admin")
        assert response.status_code == 403
        assert response.json()["error"]["message"] == (
            "Cannot create user with equal or higher role"
        )

    def test_unknown_role_is_validation_error(self, client, owner_session):
        response = _create_staff(client, owner_session, role="janitor")
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "role"

    def test_duplicate_staff_phone_conflicts(self, client, owner_session):
        _create_staff(client, owner_session)
        response = _create_staff(client, owner_session)
        assert response.status_code == 409

    def test_unknown_user_is_404(self, client, owner_session):
        response = client.delete(
            "/v1/users/does-not-exist", headers=_bearer(owner_session["access_token"])
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_user_id_is_404(self, client, owner_session):
        headers = _bearer(owner_session["access_token"])
        for response in (
            client.post("/v1/users/abc/unlock", headers=headers),
            client.patch("/v1/users/abc/role", headers=headers, json={"role": "nurse"}),
        ):
            assert response.status_code == 404
            assert response.json()["error"]["message"] == "User not found"

    def test_malformed_branch_id_is_field_error(self, client, owner_session):
        response = client.post(
            "/v1/users",
            headers=_bearer(owner_session["access_token"]),
            json={
                "phone": STAFF_PHONE,
                "name": "Ravi Kumar",
                "password": STAFF_PASSWORD,
                "role": "doctor",
                "branch_ids": ["main"],
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "branch_ids"


class TestPlatform:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-456"})
        assert response.json()["request_id"] == "req-456"

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/nope")
        assert response.status_code == 404
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "not_found"

    def test_cors_default_origin(self, client):
        response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert "access-control-allow-credentials" not in response.headers

    def test_malformed_request_id_replaced(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["X-Request-ID"] != "bad id with spaces"
        assert len(response.headers["X-Request-ID"]) == 36

    def test_rate_limited_response_has_retry_after(self, client):
        payload = {"phone": OWNER_PHONE, "purpose": "register"}
        client.post("/v1/auth/otp/request", json=payload)
        response = client.post("/v1/auth/otp/request", json=payload)
        assert int(response.headers["Retry-After"]) > 0
