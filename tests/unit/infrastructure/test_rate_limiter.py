"""Unit tests for rate limiting infrastructure."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException, Response
from fastapi.testclient import TestClient
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from starlette.requests import Request

from src.bizhub.api.http.app import app
from src.bizhub.api.http.app_data import build_dependencies
from src.bizhub.api.http.middleware.limiter import (
    AUTH_LIMIT_MESSAGE,
    DefaultLocalRateLimiter,
    RateLimiters,
    create_rate_limiters,
    limit_exceeded_callback,
    limit_identifier,
)
from src.bizhub.runtime.config.config_data import (
    AppConfig,
    ConfigData,
    RateLimiterConfig,
    RedisConfig,
)


class TickClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_request(ip: str = "203.0.113.10", headers: dict | None = None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": raw_headers,
            "client": (ip, 12345),
        }
    )


class TestDefaultLocalRateLimiter:
    """Test the in-memory sliding window."""

    @pytest.mark.asyncio
    async def test_allows_requests_within_limit(self):
        limiter = DefaultLocalRateLimiter(2, 10_000)

        await limiter(make_request(), Response())
        await limiter(make_request(), Response())

    @pytest.mark.asyncio
    async def test_blocks_requests_when_limit_exceeded(self):
        clock = TickClock()
        limiter = DefaultLocalRateLimiter(2, 5_000, clock=clock)
        for _ in range(2):
            await limiter(make_request(), Response())

        clock.now += 1
        with pytest.raises(HTTPException) as exc_info:
            await limiter(make_request(), Response())

        assert exc_info.value.status_code == 429
        assert exc_info.value.headers["Retry-After"] == "4"

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = TickClock()
        limiter = DefaultLocalRateLimiter(1, 5_000, clock=clock)
        await limiter(make_request(), Response())

        clock.now += 5.5
        await limiter(make_request(), Response())

    @pytest.mark.asyncio
    async def test_clients_are_counted_separately(self):
        limiter = DefaultLocalRateLimiter(1, 60_000)

        await limiter(make_request("198.51.100.1"), Response())
        await limiter(make_request("198.51.100.2"), Response())

    @pytest.mark.asyncio
    async def test_forwarded_header_cannot_reset_the_quota(self):
        limiter = DefaultLocalRateLimiter(1, 60_000)
        await limiter(make_request(headers={"X-Forwarded-For": "192.0.2.7"}), Response())

        with pytest.raises(HTTPException):
            await limiter(make_request(headers={"X-Forwarded-For": "192.0.2.8"}), Response())

    @pytest.mark.asyncio
    async def test_trusted_proxy_forwards_the_client_address(self):
        limiter = DefaultLocalRateLimiter(1, 60_000, trusted_proxies=["10.0.0.1"])
        await limiter(make_request("10.0.0.1", {"X-Forwarded-For": "192.0.2.7"}), Response())
        await limiter(make_request("10.0.0.1", {"X-Forwarded-For": "192.0.2.8"}), Response())

        with pytest.raises(HTTPException):
            await limiter(
                make_request("10.0.0.1", {"X-Forwarded-For": "192.0.2.7, 10.0.0.1"}),
                Response(),
            )

    @pytest.mark.asyncio
    async def test_cleanup_forgets_clients(self):
        limiter = DefaultLocalRateLimiter(1, 60_000)
        await limiter(make_request(), Response())

        await limiter.cleanup()

        await limiter(make_request(), Response())


class TestRateLimiters:
    def test_tiers_follow_config(self):
        limiters = RateLimiters(RateLimiterConfig(requests=100, auth_requests=5))

        assert limiters.get("auth") is limiters.auth
        assert limiters.get("general") is limiters.general
        assert limiters.auth is not limiters.general
        assert isinstance(limiters.auth, DefaultLocalRateLimiter)

    def test_distributed_tiers_use_fastapi_limiter(self):
        limiters = RateLimiters(RateLimiterConfig(), distributed=True)

        assert isinstance(limiters.general, RateLimiter)
        assert isinstance(limiters.auth, RateLimiter)

    @pytest.mark.asyncio
    async def test_distributed_close_releases_redis(self, monkeypatch):
        close = AsyncMock()
        monkeypatch.setattr(FastAPILimiter, "close", close)

        await RateLimiters(RateLimiterConfig(), distributed=True).close()

        close.assert_awaited_once()


class TestRedisBackedLimiter:
    @pytest.fixture
    def redis_config(self):
        return ConfigData(
            redis=RedisConfig(enabled=True, url="redis://cache:6379/0", key_prefix="bizhub"),
            rate_limiter=RateLimiterConfig(requests=10, auth_requests=3),
        )

    @pytest.mark.asyncio
    async def test_initialises_fastapi_limiter_when_redis_enabled(self, redis_config, monkeypatch):
        client = MagicMock(name="redis-client")
        from_url = MagicMock(return_value=client)
        init = AsyncMock()
        monkeypatch.setattr("redis.asyncio.from_url", from_url)
        monkeypatch.setattr(FastAPILimiter, "init", init)

        limiters = await create_rate_limiters(redis_config)

        assert limiters.distributed
        assert isinstance(limiters.auth, RateLimiter)
        from_url.assert_called_once()
        init.assert_awaited_once()
        assert init.await_args.args[0] is client
        assert init.await_args.kwargs["prefix"] == "bizhub:limiter"

    @pytest.mark.asyncio
    async def test_local_limiter_when_redis_disabled(self, monkeypatch):
        from_url = MagicMock()
        monkeypatch.setattr("redis.asyncio.from_url", from_url)

        limiters = await create_rate_limiters(ConfigData())

        assert not limiters.distributed
        assert isinstance(limiters.general, DefaultLocalRateLimiter)
        from_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_outside_production(self, redis_config, monkeypatch):
        monkeypatch.setattr("redis.asyncio.from_url", MagicMock())
        monkeypatch.setattr(
            FastAPILimiter, "init", AsyncMock(side_effect=ConnectionError("refused"))
        )

        limiters = await create_rate_limiters(redis_config)

        assert not limiters.distributed
        assert isinstance(limiters.auth, DefaultLocalRateLimiter)

    @pytest.mark.asyncio
    async def test_redis_failure_is_fatal_in_production(self, redis_config, monkeypatch):
        config = redis_config.model_copy(update={"app": AppConfig(environment="production")})
        monkeypatch.setattr("redis.asyncio.from_url", MagicMock())
        monkeypatch.setattr(
            FastAPILimiter, "init", AsyncMock(side_effect=ConnectionError("refused"))
        )

        with pytest.raises(ConnectionError):
            await create_rate_limiters(config)

    @pytest.mark.asyncio
    async def test_identifier_keys_on_peer_and_tier(self):
        request = make_request("198.51.100.1", {"X-Forwarded-For": "192.0.2.7"})

        assert await limit_identifier("auth")(request) == "auth:ip:198.51.100.1"
        assert (
            await limit_identifier("general", ["198.51.100.1"])(request)
            == "general:ip:192.0.2.7"
        )

    @pytest.mark.asyncio
    async def test_rejection_carries_message_and_retry_after(self):
        callback = limit_exceeded_callback(AUTH_LIMIT_MESSAGE)

        with pytest.raises(HTTPException) as exc_info:
            await callback(make_request(), Response(), 1500)

        assert exc_info.value.status_code == 429
        assert exc_info.value.detail == AUTH_LIMIT_MESSAGE
        assert exc_info.value.headers["Retry-After"] == "2"


class TestRateLimitedEndpoints:
    @pytest.fixture
    def make_client(self, test_config, store, clock, fake_idp, fake_payments, email_outbox):
        def factory(trusted_proxies: list[str] | None = None):
            config = test_config.model_copy(
                update={
                    "rate_limiter": RateLimiterConfig(auth_requests=2, requests=1000),
                    "app": test_config.app.model_copy(
                        update={"trusted_proxies": trusted_proxies or []}
                    ),
                }
            )
            app.state.app_dependencies = build_dependencies(
                config,
                store,
                identity_provider=fake_idp,
                payment_verifier=fake_payments,
                email_dispatcher=email_outbox,
                clock=clock,
            )
            return TestClient(app)

        yield factory
        app.state.app_dependencies = None

    @pytest.fixture
    def limited_client(self, make_client):
        with make_client() as client:
            yield client

    def test_credential_endpoints_have_a_strict_quota(self, limited_client):
        for _ in range(2):
            response = limited_client.post("/api/forgot-password", json={"email": "ama@x.com"})
            assert response.status_code == 200

        response = limited_client.post("/api/forgot-password", json={"email": "ama@x.com"})

        assert response.status_code == 429
        assert response.json()["detail"] == AUTH_LIMIT_MESSAGE
        assert int(response.headers["Retry-After"]) > 0

    def test_rotating_forwarded_header_still_hits_the_quota(self, limited_client):
        statuses = [
            limited_client.post(
                "/api/forgot-password",
                json={"email": "ama@x.com"},
                headers={"X-Forwarded-For": f"203.0.113.{n}"},
            ).status_code
            for n in range(4)
        ]

        assert statuses == [200, 200, 429, 429]

    def test_forwarded_clients_counted_apart_behind_trusted_proxy(self, make_client):
        with make_client(trusted_proxies=["testclient"]) as client:
            for n in range(3):
                response = client.post(
                    "/api/forgot-password",
                    json={"email": "ama@x.com"},
                    headers={"X-Forwarded-For": f"203.0.113.{n}"},
                )
                assert response.status_code == 200

    def test_session_endpoints_use_the_general_quota(self, limited_client):
        for _ in range(5):
            assert limited_client.get("/api/me").status_code == 401

    def test_disabled_limiter(self, test_config, store, fake_idp):
        config = test_config.model_copy(
            update={"rate_limiter": RateLimiterConfig(enabled=False, auth_requests=1)}
        )
        app.state.app_dependencies = build_dependencies(config, store, identity_provider=fake_idp)
        try:
            with TestClient(app) as client:
                for _ in range(3):
                    response = client.post("/api/forgot-password", json={"email": "ama@x.com"})
                    assert response.status_code == 200
        finally:
            app.state.app_dependencies = None
