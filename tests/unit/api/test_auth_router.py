"""Tests for the credential endpoints through the full HTTP stack."""

from src.bizhub.core.models.security_event import SecurityEventType as Event
from src.bizhub.core.services.auth_service import RESET_ACKNOWLEDGEMENT
from tests.utils import run, with_payload_subject


def _register(client, fake_idp, name="Ama Owusu", uid="uid-ama", email="ama@x.com"):
    return client.post(
        "/api/register", json={"name": name, "token": fake_idp.mint(uid, email)}
    )


class TestRegisterAndLogin:
    """Register, then log in with a fresh identity provider token."""

    def test_register_then_login(self, client, fake_idp):
        registered = _register(client, fake_idp)
        assert registered.status_code == 200
        body = registered.json()
        assert body["user"]["name"] == "Ama Owusu"
        assert body["user"]["subscription"]["planType"] == "All"
        assert body["user"]["subscription"]["isTrial"] is True

        login = client.post(
            "/api/login",
            json={"email": "ama@x.com", "token": fake_idp.mint("uid-ama", "ama@x.com")},
        )

        assert login.status_code == 200
        assert login.json()["user"]["id"] == "uid-ama"

        me = client.get("/api/me", headers={"x-auth-token": login.json()["token"]})
        assert me.status_code == 200
        assert me.json()["email"] == "ama@x.com"
        assert "resetPasswordTokenHash" not in me.json()
        assert "version" not in me.json()

    def test_duplicate_registration(self, client, fake_idp):
        _register(client, fake_idp)

        response = _register(client, fake_idp)

        assert response.status_code == 400
        assert response.json()["detail"] == "User already exists"

    def test_short_name(self, client, fake_idp):
        response = _register(client, fake_idp, name="A")

        assert response.status_code == 400
        assert "Name must be between" in response.json()["detail"]

    def test_missing_field_is_400(self, client):
        response = client.post("/api/register", json={"name": "Ama Owusu"})

        assert response.status_code == 400
        assert response.json()["detail"]

    def test_rejected_token_is_generic_401(self, client):
        response = client.post(
            "/api/login", json={"email": "ama@x.com", "token": "aaa.bbb.ccc"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication failed"
        assert "request_id" in response.json()

    def test_five_failures_then_429(self, client, fake_idp):
        _register(client, fake_idp)
        for _ in range(5):
            response = client.post(
                "/api/login", json={"email": "ama@x.com", "token": "aaa.bbb.ccc"}
            )
            assert response.status_code == 401

        response = client.post(
            "/api/login",
            json={"email": "ama@x.com", "token": fake_idp.mint("uid-ama", "ama@x.com")},
        )

        assert response.status_code == 429
        body = response.json()
        assert body["accountLocked"] is True
        assert body["minutesRemaining"] == 15
        assert "Try again in 15 minutes" in body["detail"]


class TestSessionHeader:
    def test_missing_header(self, client):
        response = client.get("/api/me")

        assert response.status_code == 401
        assert response.json()["detail"] == "No token, authorization denied"

    def test_invalid_token_is_generic_and_logged(self, client, security_log):
        response = client.get("/api/me", headers={"x-auth-token": "aaa.bbb.ccc"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Token is not valid"
        (event,) = run(security_log.recent(Event.TOKEN_VALIDATION_FAILED))
        assert event.details["path"] == "/api/me"
        assert event.details["error"].startswith("signature rejected")

    def test_rewritten_payload_is_rejected_and_logged(
        self, client, auth_headers, seed_identity, security_log
    ):
        seed_identity(subject_id="uid-kofi")
        seed_identity(subject_id="uid-other", email="other@x.com", name="Other User")
        ((header, token),) = auth_headers("uid-kofi").items()

        response = client.get(
            "/api/me", headers={header: with_payload_subject(token, "uid-other")}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Token is not valid"
        (event,) = run(security_log.recent(Event.TOKEN_VALIDATION_FAILED))
        assert event.details["path"] == "/api/me"
        assert event.details["error"].startswith("signature rejected")

    def test_expired_session(self, client, auth_headers, seed_identity, clock):
        seed_identity(subject_id="uid-kofi")
        headers = auth_headers("uid-kofi")
        clock.advance(days=8)

        response = client.get("/api/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["detail"] == "Token is not valid"

    def test_session_for_deleted_subject(self, client, auth_headers):
        response = client.get("/api/me", headers=auth_headers("uid-gone"))

        assert response.status_code == 404
        assert response.json()["detail"] == "User not found"


class TestPasswordReset:
    def test_forgot_password_never_reveals_existence(self, client, fake_idp):
        _register(client, fake_idp)

        known = client.post("/api/forgot-password", json={"email": "ama@x.com"})
        unknown = client.post("/api/forgot-password", json={"email": "ghost@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json() == {"msg": RESET_ACKNOWLEDGEMENT}

    def test_reset_password(self, client, fake_idp, email_outbox):
        _register(client, fake_idp)
        client.post("/api/forgot-password", json={"email": "ama@x.com"})
        reset_token = email_outbox.outbox[-1][2]["token"]

        response = client.post(
            "/api/reset-password",
            json={"resetToken": reset_token, "newPassword": "n3w-secret"},
        )

        assert response.status_code == 200
        assert fake_idp.credential_updates == [("uid-ama", "n3w-secret")]

    def test_reset_password_too_short(self, client):
        response = client.post(
            "/api/reset-password", json={"resetToken": "aaa.bbb.ccc", "newPassword": "12345"}
        )

        assert response.status_code == 400
        assert "6 or more characters" in response.json()["detail"]
