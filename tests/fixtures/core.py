from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.bizhub.core.storage import InMemoryDocumentStore
from src.bizhub.runtime.config.config_data import (
    AppConfig,
    ConfigData,
    IdentityProviderConfig,
    RateLimiterConfig,
    SessionConfig,
)
from tests.fixtures.dummies import FlakyDocumentStore, FrozenClock

_SESSION_SECRET = "test-session-signing-secret"
_ISSUER = "https://issuer.test/bizhub"
_AUDIENCE = "bizhub-test"
_JWKS_URI = "https://issuer.test/jwks.json"


@pytest.fixture
def issuer() -> str:
    return _ISSUER


@pytest.fixture
def audience() -> str:
    return _AUDIENCE


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(signing_secret=_SESSION_SECRET, issuer="bizhub-api")


@pytest.fixture
def identity_provider_config() -> IdentityProviderConfig:
    return IdentityProviderConfig(
        issuer=_ISSUER,
        audience=_AUDIENCE,
        jwks_uri=_JWKS_URI,
        credential_update_endpoint="https://issuer.test/accounts:update",
        clock_skew=0,
    )


@pytest.fixture
def test_config(
    session_config: SessionConfig, identity_provider_config: IdentityProviderConfig
) -> ConfigData:
    """Configuration used by service and API tests.

    The credential endpoint quota is raised so lockout behavior can be
    exercised without tripping the rate limiter.
    """
    return ConfigData(
        app=AppConfig(environment="test"),
        session=session_config,
        identity_provider=identity_provider_config,
        rate_limiter=RateLimiterConfig(auth_requests=100, requests=1000),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def flaky_store() -> FlakyDocumentStore:
    return FlakyDocumentStore()
