"""Input sanitization and token helpers for the authentication flow."""

import base64
import hashlib
import hmac
import re
import secrets
from collections.abc import Collection
from typing import Any

from fastapi import Request

EMAIL_PATTERN = re.compile(r"^[^\s@]{1,64}@[^\s@]{1,255}\.[^\s@]{2,}$")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_TOKEN_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


def sanitize_email(raw: Any) -> str | None:
    """Normalize an email address or reject it.

    Args:
        raw: Untrusted input, possibly not a string

    Returns:
        The trimmed, lowercased address, or None if it is not plausibly an email
    """
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not EMAIL_PATTERN.match(candidate):
        return None
    return candidate.lower()


def sanitize_free_text(raw: Any, max_len: int = 500) -> str | None:
    """Strip markup and control characters from free text.

    Args:
        raw: Untrusted input
        max_len: Maximum length of the returned string

    Returns:
        Cleaned text (possibly empty), or None for non-string input
    """
    if not isinstance(raw, str):
        return None
    cleaned = _TAG_PATTERN.sub("", raw)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return cleaned.strip()[:max_len]


def is_well_formed_session_token(token: Any) -> bool:
    """Structural JWT check: three non-empty base64url segments."""
    if not isinstance(token, str) or not token:
        return False
    segments = token.split(".")
    if len(segments) != 3:
        return False
    return all(_TOKEN_SEGMENT.match(segment) for segment in segments)


def generate_secure_token(length: int = 32) -> str:
    """Generate a URL-safe random token from ``length`` random bytes."""
    return (
        base64.urlsafe_b64encode(secrets.token_bytes(length))
        .decode("utf-8")
        .rstrip("=")
    )


def hash_token(token: str) -> str:
    """SHA256 hex digest used to store one-time tokens at rest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches_hash(token: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_token(token), stored_hash)


FORWARDED_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def extract_client_ip(request: Request, trusted_proxies: Collection[str] = ()) -> str:
    """The caller's address.

    Forwarding headers are only believed when the socket peer is one of
    ``trusted_proxies``; ``"*"`` trusts every peer. Otherwise any client could
    pick its own address.
    """
    peer = request.client.host if request.client else None
    if peer is not None and (peer in trusted_proxies or "*" in trusted_proxies):
        for header in FORWARDED_HEADERS:
            value = request.headers.get(header)
            if value:
                return value.split(",")[0].strip()

    return peer or "unknown"
