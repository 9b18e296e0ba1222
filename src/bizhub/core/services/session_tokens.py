"""Self-issued session and password-reset tokens."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from authlib.common.security import generate_token
from authlib.jose import JoseError, jwt
from authlib.jose.errors import ExpiredTokenError
from loguru import logger

from src.bizhub.core.errors import SessionIssueError, SessionValidationError
from src.bizhub.core.models.session import SessionClaims
from src.bizhub.core.security import is_well_formed_session_token
from src.bizhub.core.services.security_log import utc_now
from src.bizhub.runtime.config.config_data import SessionConfig

RESET_PURPOSE = "password_reset"


class SessionTokenService:
    """Issues and validates stateless HS256 session tokens.

    Session tokens carry ``{"user": {"id": <subjectId>}}`` alongside the
    registered claims. Validation failures always surface as
    :class:`SessionValidationError`; the reason is for logs only.
    """

    def __init__(self, config: SessionConfig, clock: Callable[[], datetime] = utc_now):
        self._config = config
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock().timestamp())

    def _sign(self, payload: dict[str, Any]) -> str:
        secret = self._config.signing_secret
        if not secret:
            raise SessionIssueError()
        try:
            header = {"alg": self._config.algorithm, "typ": "JWT"}
            token = jwt.encode(header, payload, secret)
        except (JoseError, ValueError) as e:
            logger.error("Session token encoding failed: {}", e)
            raise SessionIssueError() from e
        return token.decode() if isinstance(token, bytes) else token

    def _decode(self, token: str) -> dict[str, Any]:
        secret = self._config.signing_secret
        if not secret:
            raise SessionValidationError("signing secret not configured")
        if not is_well_formed_session_token(token):
            raise SessionValidationError("malformed token")
        try:
            claims = jwt.decode(
                token,
                secret,
                claims_options={
                    "iss": {"essential": True, "values": [self._config.issuer]},
                },
            )
        except (JoseError, ValueError) as e:
            raise SessionValidationError(f"signature rejected: {e}") from e

        if claims.header.get("alg") != self._config.algorithm:
            raise SessionValidationError("unexpected algorithm")
        try:
            claims.validate(now=self._now(), leeway=self._config.clock_skew)
        except ExpiredTokenError as e:
            raise SessionValidationError("token expired") from e
        except (JoseError, ValueError) as e:
            raise SessionValidationError(f"claims rejected: {e}") from e
        return dict(claims)

    def issue(self, subject_id: str) -> str:
        """Mint a session token for ``subject_id``.

        Raises:
            SessionIssueError: If no signing secret is configured or signing fails
        """
        now = self._now()
        payload = {
            "user": {"id": subject_id},
            "sub": subject_id,
            "iss": self._config.issuer,
            "iat": now,
            "exp": now + self._config.ttl_seconds,
            "jti": generate_token(16),
        }
        return self._sign(payload)

    def validate(self, token: str) -> SessionClaims:
        """Verify a session token and return its claims.

        Raises:
            SessionValidationError: On any structural, signature, expiry or payload problem
        """
        claims = self._decode(token)

        user = claims.get("user")
        subject_id = user.get("id") if isinstance(user, dict) else None
        if not subject_id or not isinstance(subject_id, str):
            raise SessionValidationError("Invalid token payload")

        if claims.get("iat") is None or claims.get("exp") is None:
            raise SessionValidationError("Token missing required claims")

        return SessionClaims(
            subject_id=subject_id,
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            jti=claims.get("jti"),
        )

    def issue_reset_token(self, subject_id: str) -> tuple[str, datetime]:
        """Mint a one-time password reset token. Returns the token and its expiry."""
        now = self._now()
        expires = now + self._config.reset_token_ttl_seconds
        token = self._sign(
            {
                "sub": subject_id,
                "purpose": RESET_PURPOSE,
                "iss": self._config.issuer,
                "iat": now,
                "exp": expires,
                "jti": generate_token(16),
            }
        )
        return token, datetime.fromtimestamp(expires, tz=self._clock().tzinfo)

    def validate_reset_token(self, token: str) -> str:
        """Return the subject a reset token was issued to.

        Raises:
            SessionValidationError: If the token is invalid, expired, or not a reset token
        """
        claims = self._decode(token)
        if claims.get("purpose") != RESET_PURPOSE or not claims.get("sub"):
            raise SessionValidationError("not a password reset token")
        return claims["sub"]
