"""Admin endpoints: user management, subscription overrides and lockout resets."""

from datetime import timedelta

import pytest

from src.bizhub.core.models.identity import PlanType, Role
from src.bizhub.core.models.security_event import SecurityEventType as Event
from tests.utils import run


@pytest.fixture
def admin_headers(seed_identity, auth_headers):
    seed_identity(
        subject_id="uid-admin",
        email="admin@x.com",
        name="Efua Admin",
        role=Role.ADMIN,
        plan=None,
        is_active=False,
    )
    return auth_headers("uid-admin")


@pytest.fixture
def population(seed_identity, clock):
    """Three ordinary users created a minute apart."""
    seed_identity(subject_id="uid-ama", email="ama@x.com", name="Ama Owusu")
    clock.advance(minutes=1)
    seed_identity(
        subject_id="uid-kofi", email="kofi@x.com", name="Kofi Mensah", is_active=False
    )
    clock.advance(minutes=1)
    seed_identity(
        subject_id="uid-yaw",
        email="yaw@x.com",
        name="Yaw Boateng",
        plan=PlanType.SCHOOL,
        end_date=clock() + timedelta(days=3),
    )


class TestAdminGuard:
    def test_regular_user_is_refused(self, client, seed_identity, auth_headers):
        seed_identity()

        response = client.get("/api/admin/users", headers=auth_headers("uid-kofi"))

        assert response.status_code == 403
        assert response.json()["detail"] == "Access denied. Admin only."

    def test_missing_session(self, client):
        assert client.get("/api/admin/users").status_code == 401


class TestUserListing:
    def test_newest_first(self, client, admin_headers, population):
        response = client.get("/api/admin/users", headers=admin_headers)

        assert response.status_code == 200
        ids = [u["id"] for u in response.json()]
        assert ids[:3] == ["uid-yaw", "uid-kofi", "uid-ama"]
        assert all("resetPasswordTokenHash" not in u for u in response.json())

    def test_filters(self, client, admin_headers, population):
        users = client.get(
            "/api/admin/users",
            params={"role": "user", "subscriptionStatus": "inactive"},
            headers=admin_headers,
        ).json()
        assert [u["id"] for u in users] == ["uid-kofi"]

        users = client.get(
            "/api/admin/users", params={"search": "OWUSU"}, headers=admin_headers
        ).json()
        assert [u["id"] for u in users] == ["uid-ama"]

    def test_unknown_role_filter(self, client, admin_headers):
        response = client.get(
            "/api/admin/users", params={"role": "owner"}, headers=admin_headers
        )

        assert response.status_code == 400

    def test_get_user(self, client, admin_headers, population):
        response = client.get("/api/admin/users/uid-yaw", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["email"] == "yaw@x.com"

        assert client.get("/api/admin/users/uid-ghost", headers=admin_headers).status_code == 404


class TestSubscriptionOverride:
    def test_revoke_and_change_plan(self, client, admin_headers, population, security_log):
        response = client.put(
            "/api/admin/users/uid-ama/subscription",
            json={"isActive": False, "planType": "Office"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        subscription = response.json()["subscription"]
        assert subscription["isActive"] is False
        assert subscription["planType"] == "Office"
        (event,) = run(security_log.recent(Event.ADMIN_SUBSCRIPTION_UPDATED))
        assert event.details == {
            "adminId": "uid-admin",
            "userId": "uid-ama",
            "changes": {"isActive": False, "planType": "Office"},
        }

    def test_naive_end_date_is_read_as_utc(self, client, admin_headers, population, auth_headers):
        response = client.put(
            "/api/admin/users/uid-kofi/subscription",
            json={"isActive": True, "endDate": "2099-01-01T00:00:00"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["subscription"]["endDate"] == "2099-01-01T00:00:00Z"

        access = client.get("/api/pharmacy/access", headers=auth_headers("uid-kofi"))
        assert access.status_code == 200
        expiring = client.get("/api/admin/expiring-subscriptions", headers=admin_headers)
        assert expiring.status_code == 200

    def test_naive_past_end_date_denies_access(
        self, client, admin_headers, population, auth_headers
    ):
        client.put(
            "/api/admin/users/uid-ama/subscription",
            json={"endDate": "2020-01-01T00:00:00"},
            headers=admin_headers,
        )

        access = client.get("/api/pharmacy/access", headers=auth_headers("uid-ama"))

        assert access.status_code == 403
        assert access.json()["detail"] == "Subscription has expired"
        assert access.json()["requiresPayment"] is True

    def test_unknown_user(self, client, admin_headers):
        response = client.put(
            "/api/admin/users/uid-ghost/subscription",
            json={"isActive": True},
            headers=admin_headers,
        )

        assert response.status_code == 404


class TestDeleteUser:
    def test_delete(self, client, admin_headers, population, identities, security_log):
        response = client.delete("/api/admin/users/uid-kofi", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"msg": "User removed"}
        assert run(identities.get("uid-kofi")) is None
        assert run(security_log.recent(Event.ADMIN_USER_DELETED))

    def test_cannot_delete_self(self, client, admin_headers):
        response = client.delete("/api/admin/users/uid-admin", headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot delete your own account"

    def test_delete_unknown(self, client, admin_headers):
        response = client.delete("/api/admin/users/uid-ghost", headers=admin_headers)

        assert response.status_code == 404


class TestBulkAndExpiring:
    def test_bulk_activate(self, client, admin_headers, population, identities):
        response = client.post(
            "/api/admin/bulk/activate",
            json={"userIds": ["uid-kofi", "uid-ghost"], "planType": "Inventory", "duration": 6},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["msg"] == "1 subscriptions activated"
        assert body["missing"] == ["uid-ghost"]

        record = run(identities.get("uid-kofi"))
        assert record.subscription.is_active is True
        assert record.subscription.plan_type is PlanType.INVENTORY
        assert record.subscription.end_date.month == 9

    def test_bulk_activate_requires_ids(self, client, admin_headers):
        response = client.post(
            "/api/admin/bulk/activate",
            json={"userIds": [], "planType": "Inventory"},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Please provide user IDs"

    def test_expiring_subscriptions(self, client, admin_headers, population):
        response = client.get(
            "/api/admin/expiring-subscriptions", params={"days": 7}, headers=admin_headers
        )

        assert response.status_code == 200
        assert [u["id"] for u in response.json()] == ["uid-yaw"]

        response = client.get(
            "/api/admin/expiring-subscriptions", params={"days": 1}, headers=admin_headers
        )
        assert response.json() == []


class TestUserEdit:
    def test_promote_to_admin(self, client, admin_headers, population, auth_headers, security_log):
        response = client.put(
            "/api/admin/users/uid-ama", json={"role": "admin"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["role"] == "admin"
        assert client.get("/api/admin/users", headers=auth_headers("uid-ama")).status_code == 200
        (event,) = run(security_log.recent(Event.ADMIN_USER_UPDATED))
        assert event.details == {"adminId": "uid-admin", "userId": "uid-ama", "changes": ["role"]}

    def test_name_and_email_are_sanitized(self, client, admin_headers, population, identities):
        response = client.put(
            "/api/admin/users/uid-ama",
            json={"name": " <b>Ama</b> Mensah ", "email": "Ama.New@X.com"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        record = run(identities.get("uid-ama"))
        assert record.display_name == "Ama Mensah"
        assert record.email == "ama.new@x.com"
        assert record.subscription.plan_type is PlanType.PHARMACY

    def test_email_of_another_user_is_refused(self, client, admin_headers, population):
        response = client.put(
            "/api/admin/users/uid-ama", json={"email": "KOFI@x.com"}, headers=admin_headers
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Email already in use"

    @pytest.mark.parametrize(
        ("body", "detail"),
        [
            ({}, "No changes provided"),
            ({"email": "not-an-email"}, "Invalid email format"),
            ({"name": "<i></i>"}, "Name must be between 2-100 characters"),
        ],
    )
    def test_invalid_edits(self, client, admin_headers, population, body, detail):
        response = client.put("/api/admin/users/uid-ama", json=body, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == detail

    def test_unknown_role(self, client, admin_headers, population):
        response = client.put(
            "/api/admin/users/uid-ama", json={"role": "owner"}, headers=admin_headers
        )

        assert response.status_code == 400

    def test_unknown_user(self, client, admin_headers):
        response = client.put(
            "/api/admin/users/uid-ghost", json={"name": "Ghost"}, headers=admin_headers
        )

        assert response.status_code == 404


class TestStatsAndActivity:
    def test_stats(self, client, admin_headers, population):
        response = client.get("/api/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["users"] == {
            "total": 4,
            "active": 2,
            "inactive": 2,
            "admins": 1,
            "recentRegistrations": 4,
        }
        assert body["subscriptions"] == {
            "active": 2,
            "expiring": 1,
            "pharmacy": 1,
            "inventory": 0,
            "school": 1,
            "office": 0,
            "all": 0,
        }

    def test_lapsed_plan_is_not_counted_active(self, client, admin_headers, population, clock):
        clock.advance(days=4)

        body = client.get("/api/admin/stats", headers=admin_headers).json()

        assert body["users"]["active"] == 1
        assert body["subscriptions"]["school"] == 0
        assert body["subscriptions"]["expiring"] == 0

    def test_activity_lists_newest_registrations(self, client, admin_headers, population):
        response = client.get(
            "/api/admin/activity", params={"limit": 2}, headers=admin_headers
        )

        assert response.status_code == 200
        recent = response.json()["recentUsers"]
        assert [u["id"] for u in recent] == ["uid-yaw", "uid-kofi"]
        assert set(recent[0]) == {"id", "name", "email", "createdAt", "subscription"}
        assert recent[0]["subscription"]["planType"] == "School"

    def test_activity_limit_must_be_positive(self, client, admin_headers):
        response = client.get(
            "/api/admin/activity", params={"limit": 0}, headers=admin_headers
        )

        assert response.status_code == 400


class TestUnlock:
    def test_unlock_locked_account(self, client, admin_headers, lockout, security_log):
        for _ in range(5):
            run(lockout.record_failed_login("ama@x.com"))
        assert run(lockout.check("ama@x.com")).locked

        response = client.post("/api/admin/lockouts/Ama@X.com/unlock", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"msg": "Account unlocked", "hadLockout": True}
        assert not run(lockout.check("ama@x.com")).locked
        (event,) = run(security_log.recent(Event.ADMIN_UNLOCK))
        assert event.details["email"] == "ama@x.com"

    def test_unlock_without_record(self, client, admin_headers):
        response = client.post("/api/admin/lockouts/ama@x.com/unlock", headers=admin_headers)

        assert response.json()["hadLockout"] is False

    def test_unlock_invalid_email(self, client, admin_headers):
        response = client.post("/api/admin/lockouts/not-an-email/unlock", headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid email format"
