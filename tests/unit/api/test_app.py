"""Application-level behavior: probes, headers, request ids and error rendering."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from src.bizhub.api.http.app import app
from src.bizhub.api.http.app_data import build_dependencies
from src.bizhub.core.storage import InMemoryDocumentStore
from tests.fixtures.dummies import FlakyDocumentStore


class UnreachableStore(InMemoryDocumentStore):
    async def ping(self) -> bool:
        return False


@pytest.fixture
def client_for_store(test_config, clock, fake_idp, fake_payments, email_outbox):
    """Client factory bound to a specific document store."""
    clients = []

    def _client(store):
        app.state.app_dependencies = build_dependencies(
            test_config,
            store,
            identity_provider=fake_idp,
            payment_verifier=fake_payments,
            email_dispatcher=email_outbox,
            clock=clock,
        )
        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _client
    for test_client in clients:
        test_client.__exit__(None, None, None)
    app.state.app_dependencies = None


class TestProbes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    def test_not_ready_when_store_does_not_answer(self, client_for_store):
        response = client_for_store(UnreachableStore()).get("/ready")

        assert response.status_code == 503
        assert response.json() == {"status": "unavailable"}


class TestResponseHeaders:
    def test_security_headers(self, client):
        response = client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Strict-Transport-Security" not in response.headers

    def test_request_id_is_generated(self, client):
        response = client.get("/health")

        assert response.headers["X-Request-ID"]

    def test_request_id_is_propagated(self, client):
        response = client.get("/api/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestErrorRendering:
    def test_store_outage_is_generic_500(self, client_for_store, sessions):
        store = FlakyDocumentStore()
        client = client_for_store(store)
        store.down = True

        response = client.get("/api/me", headers={"x-auth-token": sessions.issue("uid-kofi")})

        assert response.status_code == 500
        assert response.json()["detail"] == "Server error"

    def test_unexpected_error_is_generic_500(self, client, app_dependencies, auth_headers):
        app_dependencies.identities.require = AsyncMock(side_effect=KeyError("boom"))

        response = client.get("/api/me", headers=auth_headers("uid-kofi"))

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal Server Error"
        assert "boom" not in response.text

    def test_unknown_route(self, client):
        assert client.get("/api/nope").status_code == 404
