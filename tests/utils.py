import asyncio
import base64
import json
import time
from collections.abc import Coroutine
from typing import Any, TypeVar

from authlib.jose import JsonWebKey, jwt

T = TypeVar("T")


def oct_jwk(key: bytes, kid: str) -> dict[str, str]:
    return {
        "kty": "oct",
        "k": base64.urlsafe_b64encode(key).rstrip(b"=").decode("ascii"),
        "alg": "HS256",
        "kid": kid,
    }


def rsa_key(kid: str):
    """Generate a private RSA key with ``kid`` set."""
    return JsonWebKey.generate_key("RSA", 2048, options={"kid": kid}, is_private=True)


def public_jwk(key, kid: str) -> dict[str, Any]:
    jwk = key.as_dict(is_private=False)
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


def id_token_claims(
    issuer: str,
    audience: str,
    sub: str = "uid-ama",
    email: str = "ama@x.com",
    lifetime: int = 3600,
    **extra: Any,
) -> dict[str, Any]:
    now = int(time.time())
    claims = {
        "iss": issuer,
        "aud": audience,
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + lifetime,
    }
    claims.update(extra)
    return claims


def sign_id_token(key, claims: dict[str, Any], kid: str, alg: str = "RS256") -> str:
    token = jwt.encode({"alg": alg, "kid": kid}, claims, key)
    return token.decode() if isinstance(token, bytes) else token


def with_payload_subject(token: str, subject_id: str) -> str:
    """Rewrite the subject in a signed token, keeping its header and signature."""
    header, payload, signature = token.split(".")
    claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    claims["user"]["id"] = subject_id
    claims["sub"] = subject_id
    forged = json.dumps(claims, separators=(",", ":")).encode()
    encoded = base64.urlsafe_b64encode(forged).rstrip(b"=").decode("ascii")
    return f"{header}.{encoded}.{signature}"


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Drive an in-memory store coroutine from a synchronous TestClient test."""
    return asyncio.run(coro)
