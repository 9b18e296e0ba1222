"""Client for the external identity provider.

The provider issues OIDC ID tokens to the frontend after it authenticates the
user. This client verifies those tokens against the provider's published keys
and performs the one administrative call we need: setting a new password.
"""

import base64
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx
from authlib.jose import JoseError, JsonWebKey, jwt
from cachetools import TTLCache
from loguru import logger

from src.bizhub.core.errors import IdentityProviderError
from src.bizhub.core.models.session import ExternalIdentity
from src.bizhub.core.security import is_well_formed_session_token
from src.bizhub.core.services.security_log import utc_now
from src.bizhub.runtime.config.config_data import IdentityProviderConfig


def _import_key_set(jwks: Any):
    try:
        return JsonWebKey.import_key_set(jwks)
    except (JoseError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise IdentityProviderError(f"Malformed JWKS: {e}") from e


def _keys_with_kid(jwks: Any, kid: str) -> list[dict[str, Any]]:
    keys = jwks.get("keys") if isinstance(jwks, dict) else None
    if not isinstance(keys, list):
        raise IdentityProviderError("Malformed JWKS: no key list")
    return [k for k in keys if isinstance(k, dict) and k.get("kid") == kid]


class JWKSCache(ABC):
    @abstractmethod
    def get_jwks(self, jwks_uri: str) -> dict[str, Any]:
        """Cached JWKS for ``jwks_uri``, or an empty dict."""
        raise NotImplementedError

    @abstractmethod
    def set_jwks(self, jwks_uri: str, jwks: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_jwks_cache(self) -> None:
        raise NotImplementedError


class JWKSCacheInMemory(JWKSCache):
    def __init__(self, ttl_seconds: int = 3600, maxsize: int = 10) -> None:
        self._cache: TTLCache[str, dict[str, Any]] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)

    def get_jwks(self, jwks_uri: str) -> dict[str, Any]:
        return self._cache.get(jwks_uri, {})

    def set_jwks(self, jwks_uri: str, jwks: dict[str, Any]) -> None:
        self._cache[jwks_uri] = jwks

    def clear_jwks_cache(self) -> None:
        self._cache.clear()


def peek_header(token: str) -> dict[str, Any]:
    """Decode a compact JWT header without verifying anything."""
    if not is_well_formed_session_token(token):
        raise IdentityProviderError("Malformed token")
    segment = token.split(".", 1)[0]
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        header = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise IdentityProviderError("Undecodable token header") from e
    if not isinstance(header, dict):
        raise IdentityProviderError("Token header must be a JSON object")
    return header


class IdentityProvider(ABC):
    """Operations the authentication flow needs from the identity provider."""

    @abstractmethod
    async def verify_external_token(self, token: str) -> ExternalIdentity:
        """Verify an ID token issued by the provider.

        Raises:
            IdentityProviderError: If the token is rejected or cannot be checked
        """
        raise NotImplementedError

    @abstractmethod
    async def update_credential(self, subject_id: str, new_secret: str) -> None:
        """Set a new password for ``subject_id``.

        Raises:
            IdentityProviderError: If the provider refuses or is unreachable
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OidcIdentityProviderClient(IdentityProvider):
    """Identity provider client built on httpx and authlib.

    Constructed once by the application lifespan and injected wherever
    verification is needed. The shared HTTP client is released by :meth:`aclose`.
    """

    def __init__(
        self,
        config: IdentityProviderConfig,
        http_client: httpx.AsyncClient | None = None,
        cache: JWKSCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._cache = cache or JWKSCacheInMemory(ttl_seconds=config.jwks_cache_ttl_seconds)
        self._clock = clock

    async def fetch_jwks(self, force_refresh: bool = False) -> dict[str, Any]:
        jwks_uri = self._config.jwks_uri
        if not force_refresh:
            jwks = self._cache.get_jwks(jwks_uri)
            if jwks:
                return jwks

        try:
            resp = await self._http.get(jwks_uri)
            resp.raise_for_status()
            jwks = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise IdentityProviderError(f"Failed to fetch JWKS: {e}") from e

        self._cache.set_jwks(jwks_uri, jwks)
        return jwks

    async def _signing_keys(self, kid: str | None):
        jwks = await self.fetch_jwks()
        if kid is None:
            return _import_key_set(jwks)

        matching = _keys_with_kid(jwks, kid)
        if not matching:
            # Keys rotate; look once more before rejecting.
            logger.debug("No cached JWK matches kid={}, refreshing", kid)
            jwks = await self.fetch_jwks(force_refresh=True)
            matching = _keys_with_kid(jwks, kid)
        if not matching:
            raise IdentityProviderError(f"No JWK matches kid={kid}")
        return _import_key_set({"keys": matching})

    async def verify_external_token(self, token: str) -> ExternalIdentity:
        header = peek_header(token)
        alg = header.get("alg")
        if alg not in self._config.allowed_algorithms:
            raise IdentityProviderError(f"Disallowed algorithm: {alg}")

        keys = await self._signing_keys(header.get("kid"))

        claims_options = {
            "iss": {"essential": True, "values": [self._config.issuer]},
            "aud": {"essential": True, "values": [self._config.audience]},
            "sub": {"essential": True},
        }
        try:
            claims = jwt.decode(token, keys, claims_options=claims_options)
            claims.validate(
                now=int(self._clock().timestamp()), leeway=self._config.clock_skew
            )
        except (JoseError, ValueError) as e:
            raise IdentityProviderError(f"Token rejected: {e}") from e

        subject_id = claims.get("sub")
        if not subject_id:
            raise IdentityProviderError("Missing sub claim")

        return ExternalIdentity(
            subject_id=str(subject_id),
            email=claims.get("email"),
            expires_at=claims.get("exp"),
        )

    async def update_credential(self, subject_id: str, new_secret: str) -> None:
        params = {"key": self._config.api_key} if self._config.api_key else None
        try:
            resp = await self._http.post(
                self._config.credential_update_endpoint,
                params=params,
                json={
                    "localId": subject_id,
                    "password": new_secret,
                    "returnSecureToken": False,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise IdentityProviderError(
                f"Credential update rejected with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Credential update failed: {e}") from e

        logger.info("Credential updated for subject {}", subject_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
