"""Rate limiting helpers used by the HTTP layer.

Quotas are kept in Redis through ``fastapi-limiter`` when Redis is enabled,
so every worker shares them; otherwise each process counts on its own with
:class:`DefaultLocalRateLimiter`.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Collection
from typing import Any, Literal

import redis.asyncio as redis_async
from fastapi import HTTPException, Request, Response
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from loguru import logger

from src.bizhub.core.security import extract_client_ip
from src.bizhub.runtime.config.config_data import ConfigData, RateLimiterConfig

RateLimiterType = Callable[[Request, Response], Awaitable[Any]]

LimitScope = Literal["general", "auth"]

GENERAL_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
AUTH_LIMIT_MESSAGE = "Too many login attempts, please try again later."


class DefaultLocalRateLimiter:
    """Sliding-window in-memory limiter keyed by client address."""

    def __init__(
        self,
        times: int,
        milliseconds: int,
        *,
        message: str = GENERAL_LIMIT_MESSAGE,
        trusted_proxies: Collection[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._hits: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._times = times
        self._seconds = milliseconds / 1000
        self._message = message
        self._trusted_proxies = trusted_proxies
        self._clock = clock
        self._last_cleanup = clock()
        self._cleanup_interval = 60.0  # seconds

    async def __call__(self, request: Request, response: Response) -> Any:
        await self._throttle(f"ip:{extract_client_ip(request, self._trusted_proxies)}")

    async def _cleanup_old_keys(self) -> None:
        """Remove empty or very old key entries to prevent memory leaks."""
        now = self._clock()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        keys_to_remove = []

        for key, hits in self._hits.items():
            while hits and hits[0] <= now - self._seconds * 2:
                hits.popleft()
            if not hits:
                keys_to_remove.append(key)

        for key in keys_to_remove:
            del self._hits[key]

    async def cleanup(self) -> None:
        """Forget every tracked client."""
        async with self._lock:
            tracked = len(self._hits)
            self._hits.clear()
        logger.debug("Cleaned up local rate limiter with {} tracked keys", tracked)

    async def _throttle(self, key: str) -> None:
        await self._cleanup_old_keys()
        now = self._clock()
        window_start = now - self._seconds
        async with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= self._times:
                retry_after = max(0, int(self._seconds - (now - hits[0])))
                logger.bind(limiter_key=key).warning("Rate limit exceeded")
                raise HTTPException(
                    status_code=429,
                    detail=self._message,
                    headers={"Retry-After": str(retry_after)},
                )
            hits.append(now)


def limit_identifier(
    scope: LimitScope, trusted_proxies: Collection[str] = ()
) -> Callable[[Request], Awaitable[str]]:
    """Key function for the Redis-backed limiter; one counter per tier and address."""

    async def identifier(request: Request) -> str:
        return f"{scope}:ip:{extract_client_ip(request, trusted_proxies)}"

    return identifier


def limit_exceeded_callback(
    message: str,
) -> Callable[[Request, Response, int], Awaitable[None]]:
    """Rejection raised by the Redis-backed limiter, worded like the local one."""

    async def callback(request: Request, response: Response, pexpire: int) -> None:
        logger.bind(path=request.url.path).warning("Rate limit exceeded")
        raise HTTPException(
            status_code=429,
            detail=message,
            headers={"Retry-After": str(math.ceil(pexpire / 1000))},
        )

    return callback


class RateLimiters:
    """The two limiter tiers applied to the API, built from configuration.

    Args:
        config: Quotas for each tier
        trusted_proxies: Peers whose forwarding headers name the client
        distributed: Use ``fastapi-limiter``; ``FastAPILimiter.init`` must
            already have been awaited
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        *,
        trusted_proxies: Collection[str] = (),
        distributed: bool = False,
    ):
        self.enabled = config.enabled
        self.distributed = distributed
        self._trusted_proxies = trusted_proxies
        self.general = self._build(
            "general", config.requests, config.window_ms, GENERAL_LIMIT_MESSAGE
        )
        self.auth = self._build(
            "auth", config.auth_requests, config.auth_window_ms, AUTH_LIMIT_MESSAGE
        )

    def _build(
        self, scope: LimitScope, times: int, window_ms: int, message: str
    ) -> RateLimiterType:
        if self.distributed:
            return RateLimiter(
                times=times,
                milliseconds=window_ms,
                identifier=limit_identifier(scope, self._trusted_proxies),
                callback=limit_exceeded_callback(message),
            )
        return DefaultLocalRateLimiter(
            times, window_ms, message=message, trusted_proxies=self._trusted_proxies
        )

    def get(self, scope: LimitScope) -> RateLimiterType:
        return self.auth if scope == "auth" else self.general

    async def close(self) -> None:
        if not self.distributed:
            await self.general.cleanup()
            await self.auth.cleanup()
            return

        try:
            await FastAPILimiter.close()
            logger.info("Closed FastAPILimiter Redis connections")
        except Exception as e:
            logger.warning("Error closing FastAPILimiter: {}", e)


async def create_rate_limiters(config: ConfigData) -> RateLimiters:
    """Redis-backed limiters when Redis is enabled, in-memory ones otherwise.

    A Redis that cannot be initialised is fatal in production and falls back
    to the in-memory limiter elsewhere.
    """
    limits = config.rate_limiter
    trusted = config.app.trusted_proxies
    if not (config.redis.enabled and config.redis.url):
        logger.info("Redis not configured; using local in-memory rate limiter")
        return RateLimiters(limits, trusted_proxies=trusted)

    try:
        client = redis_async.from_url(
            config.redis.connection_string,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=config.redis.socket_timeout,
            socket_timeout=config.redis.socket_timeout,
        )
        await FastAPILimiter.init(
            client,
            prefix=f"{config.redis.key_prefix}:limiter",
            identifier=limit_identifier("general", trusted),
            http_callback=limit_exceeded_callback(GENERAL_LIMIT_MESSAGE),
        )
    except Exception:
        logger.exception("Failed to initialize FastAPI limiter with Redis")
        if config.app.environment == "production":
            raise
        logger.warning("Falling back to in-memory rate limiter")
        return RateLimiters(limits, trusted_proxies=trusted)

    logger.info("Using Redis-backed rate limiter from fastapi-limiter package")
    return RateLimiters(limits, trusted_proxies=trusted, distributed=True)


def rate_limit(scope: LimitScope = "general") -> RateLimiterType:
    """Return a dependency enforcing the quota for ``scope``."""

    async def dependency(request: Request, response: Response) -> Any:
        limiters: RateLimiters = request.app.state.app_dependencies.rate_limiters
        if not limiters.enabled:
            return None
        return await limiters.get(scope)(request, response)

    return dependency
