"""Integration tests for admin lock management and identity administration."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from healthvia import app as app_module
from healthvia.service.registration import RegistrationRequest
from healthvia.service.runtime import get_runtime
from healthvia.storage.models import Role

PASSWORD = "Admin#Pass123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin():
    request = RegistrationRequest(
        role=Role.ADMIN,
        first_name="Root",
        last_name="Admin",
        email="root@example.com",
        phone="5559990000",
        password=PASSWORD,
        consent=True,
        profile={"employee_id": "EMP-1", "department": "Operations"},
    )
    return asyncio.run(get_runtime().auth.register(request, actor_id="bootstrap"))


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {admin.access_token}"}


@pytest.fixture
def user(client):
    response = client.post(
        "/v1/auth/register/user",
        json={
            "first_name": "Ozan",
            "last_name": "Tekin",
            "email": "ozan@example.com",
            "phone": "5558881111",
            "password": PASSWORD,
            "consent": True,
        },
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, identifier, password=PASSWORD):
    return client.post("/v1/auth/login", json={"identifier": identifier, "password": password})


class TestAdminAccess:
    def test_non_admin_is_forbidden(self, client, user):
        response = client.get(
            "/v1/admin/locks", headers={"Authorization": f"Bearer {user['access_token']}"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_can_register_admin(self, client, admin, admin_headers):
        response = client.post(
            "/v1/auth/register/admin",
            json={
                "first_name": "Second",
                "last_name": "Admin",
                "email": "second@example.com",
                "phone": "5559990001",
                "password": PASSWORD,
                "consent": True,
                "employee_id": "EMP-2",
                "department": "Support",
                "admin_level": "senior",
            },
            headers=admin_headers,
        )
        assert response.status_code == 201
        created = get_runtime().auth.get_identity(response.json()["data"]["id"])
        assert created.created_by == admin.id
        assert created.profile.admin_level.value == "senior"


class TestLockManagement:
    def test_lock_status_unlock_cycle(self, client, admin_headers, user):
        for _ in range(get_runtime().settings.max_failed_login_attempts):
            _login(client, "ozan@example.com", "Wrong#Pass1")

        status = client.get(f"/v1/admin/identities/{user['id']}/lock", headers=admin_headers)
        assert status.status_code == 200
        assert status.json()["data"]["locked"] is True

        listed = client.get("/v1/admin/locks", headers=admin_headers)
        assert [item["id"] for item in listed.json()["data"]["items"]] == [user["id"]]

        unlocked = client.post(
            f"/v1/admin/identities/{user['id']}/unlock", headers=admin_headers
        )
        assert unlocked.status_code == 200
        assert unlocked.json()["data"]["failed_login_count"] == 0
        assert _login(client, "ozan@example.com").status_code == 200

    def test_manual_lock(self, client, admin_headers, user):
        response = client.post(
            f"/v1/admin/identities/{user['id']}/lock",
            json={"minutes": 10, "reason": "suspicious activity"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["locked"] is True
        assert _login(client, "ozan@example.com").status_code == 423

    def test_manual_lock_needs_positive_minutes(self, client, admin_headers, user):
        response = client.post(
            f"/v1/admin/identities/{user['id']}/lock",
            json={"minutes": 0},
            headers=admin_headers,
        )
        assert response.status_code == 422

    def test_cleanup_endpoint(self, client, admin_headers):
        response = client.post("/v1/admin/locks/cleanup", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["data"] == {"cleared": 0}

    def test_unknown_identity(self, client, admin_headers):
        response = client.get("/v1/admin/identities/nope/lock", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestIdentityAdministration:
    def test_suspend_blocks_login_and_existing_tokens(self, client, admin_headers, user):
        response = client.post(
            f"/v1/admin/identities/{user['id']}/status",
            json={"status": "suspended"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "suspended"
        assert _login(client, "ozan@example.com").status_code == 423
        me = client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {user['access_token']}"}
        )
        assert me.status_code == 423

    def test_status_endpoint_refuses_deleted(self, client, admin_headers, user):
        response = client.post(
            f"/v1/admin/identities/{user['id']}/status",
            json={"status": "deleted"},
            headers=admin_headers,
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_failed"
        assert error["details"]["field"] == "status"
        assert _login(client, "ozan@example.com").status_code == 200

    def test_verify_email_and_phone(self, client, admin_headers, user):
        email = client.post(
            f"/v1/admin/identities/{user['id']}/verify-email", headers=admin_headers
        )
        phone = client.post(
            f"/v1/admin/identities/{user['id']}/verify-phone", headers=admin_headers
        )
        assert email.json()["data"]["status"] == "active"
        assert phone.json()["data"]["phone_verified"] is True
        assert phone.json()["data"]["email_verified"] is True

    def test_soft_then_permanent_delete(self, client, admin, admin_headers, user):
        soft = client.delete(f"/v1/admin/identities/{user['id']}", headers=admin_headers)
        assert soft.status_code == 200
        deleted = get_runtime().auth.get_identity(user["id"], include_deleted=True)
        assert deleted.deleted_by == admin.id
        assert _login(client, "ozan@example.com").status_code == 401

        hard = client.delete(
            f"/v1/admin/identities/{user['id']}/permanent", headers=admin_headers
        )
        assert hard.status_code == 200
        again = client.delete(
            f"/v1/admin/identities/{user['id']}/permanent", headers=admin_headers
        )
        assert again.status_code == 404

    def test_admin_cannot_delete_self(self, client, admin, admin_headers):
        response = client.delete(f"/v1/admin/identities/{admin.id}", headers=admin_headers)
        assert response.status_code == 403
