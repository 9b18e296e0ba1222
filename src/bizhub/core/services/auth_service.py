"""Registration, login and password reset flows."""

from collections.abc import Callable
from datetime import datetime

from loguru import logger
from pydantic import BaseModel

from src.bizhub.core.errors import (
    AccountLockedError,
    BizhubError,
    CredentialVerificationError,
    DuplicateIdentityError,
    IdentityProviderError,
    InvalidInputError,
    SessionIssueError,
    SessionValidationError,
)
from src.bizhub.core.models.identity import IdentityRecord
from src.bizhub.core.models.security_event import SecurityEventType as Event
from src.bizhub.core.security import (
    hash_token,
    is_well_formed_session_token,
    sanitize_email,
    sanitize_free_text,
    token_matches_hash,
)
from src.bizhub.core.services.best_effort import BestEffort
from src.bizhub.core.services.credentials import CredentialVerifier
from src.bizhub.core.services.email import PASSWORD_RESET, EmailDispatcher
from src.bizhub.core.services.entitlement import EntitlementService
from src.bizhub.core.services.identities import IdentityRepository
from src.bizhub.core.services.identity_provider import IdentityProvider
from src.bizhub.core.services.lockout import LockoutTracker
from src.bizhub.core.services.security_log import SecurityEventLogger, utc_now
from src.bizhub.core.services.session_tokens import SessionTokenService

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100
MIN_PASSWORD_LENGTH = 6

RESET_ACKNOWLEDGEMENT = (
    "If an account exists for that email, a password reset link has been sent."
)


class AuthResult(BaseModel):
    token: str
    user: dict


class AuthService:
    """Orchestrates the credential flows.

    Lockout bookkeeping and security logging are best-effort; identity writes
    and session signing are not.
    """

    def __init__(
        self,
        *,
        identities: IdentityRepository,
        entitlements: EntitlementService,
        lockout: LockoutTracker,
        sessions: SessionTokenService,
        verifier: CredentialVerifier,
        provider: IdentityProvider,
        security_log: SecurityEventLogger,
        email: EmailDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._identities = identities
        self._entitlements = entitlements
        self._lockout = lockout
        self._sessions = sessions
        self._verifier = verifier
        self._provider = provider
        self._log = security_log
        self._email = email
        self._clock = clock
        self._best_effort = BestEffort("auth")

    async def register(self, name: str, token: str, ip_address: str | None = None) -> AuthResult:
        try:
            return await self._register(name, token, ip_address)
        except BizhubError:
            raise
        except Exception as e:
            logger.exception("Registration error")
            await self._log.log(
                Event.REGISTRATION_ERROR, {"name": name, "error": str(e)}, ip_address
            )
            raise BizhubError("Server error during registration") from e

    async def _register(self, name: str, token: str, ip: str | None) -> AuthResult:
        clean_name = sanitize_free_text(name, MAX_NAME_LENGTH)
        if not clean_name or len(clean_name) < MIN_NAME_LENGTH:
            await self._log.log(Event.INVALID_REGISTRATION_NAME, {"name": name}, ip)
            raise InvalidInputError(
                f"Name must be between {MIN_NAME_LENGTH}-{MAX_NAME_LENGTH} characters"
            )

        if not is_well_formed_session_token(token):
            await self._log.log(Event.INVALID_TOKEN_FORMAT_REGISTER, {"name": clean_name}, ip)
            raise InvalidInputError("Invalid token format")

        # No lockout accounting here: there is no trusted email to key it by yet.
        try:
            identity = await self._verifier.verify(token)
        except CredentialVerificationError as e:
            await self._log.log(
                Event.TOKEN_VERIFICATION_FAILED_REGISTER,
                {"name": clean_name, "error": e.reason},
                ip,
            )
            raise

        email = sanitize_email(identity.email)
        if not email:
            await self._log.log(Event.INVALID_EMAIL_REGISTER, {"email": identity.email}, ip)
            raise InvalidInputError("Invalid email format")

        subject_id = identity.subject_id
        existing = await self._identities.get(subject_id)
        if existing is None:
            existing = await self._identities.find_by_email(email)
        if existing is not None:
            await self._log.log(
                Event.DUPLICATE_REGISTRATION, {"uid": subject_id, "email": email}, ip
            )
            raise DuplicateIdentityError()

        record = IdentityRecord(
            subject_id=subject_id,
            email=email,
            display_name=clean_name,
            subscription=self._entitlements.start_trial(subject_id),
            created_at=self._clock(),
        )
        try:
            record = await self._identities.create(record)
        except DuplicateIdentityError:
            await self._log.log(
                Event.DUPLICATE_REGISTRATION, {"uid": subject_id, "email": email}, ip
            )
            raise

        await self._lockout.clear_login_attempts(email)

        try:
            session_token = self._sessions.issue(subject_id)
        except SessionIssueError as e:
            await self._log.log(
                Event.JWT_GENERATION_FAILED_REGISTER,
                {"uid": subject_id, "error": str(e.__cause__ or e)},
                ip,
            )
            raise

        await self._log.log(Event.REGISTRATION_SUCCESS, {"uid": subject_id, "email": email}, ip)
        return AuthResult(token=session_token, user=record.summary())

    async def login(self, email: str, token: str, ip_address: str | None = None) -> AuthResult:
        try:
            return await self._login(email, token, ip_address)
        except BizhubError:
            raise
        except Exception as e:
            logger.exception("Login error")
            await self._log.log(Event.LOGIN_ERROR, {"email": email, "error": str(e)}, ip_address)
            raise BizhubError("Server error") from e

    async def _fail_login(
        self, event: Event, email: str, details: dict, ip: str | None
    ) -> CredentialVerificationError:
        await self._log.log(event, {"email": email, **details}, ip)
        record = await self._lockout.record_failed_login(email)
        if record is not None and record.is_locked:
            await self._log.log(
                Event.ACCOUNT_LOCKED,
                {"email": email, "lockedUntil": record.locked_until.isoformat()},
                ip,
            )
        return CredentialVerificationError(reason=event.value)

    async def _login(self, raw_email: str, token: str, ip: str | None) -> AuthResult:
        email = sanitize_email(raw_email)
        if not email:
            await self._log.log(Event.INVALID_EMAIL_FORMAT, {"email": raw_email}, ip)
            raise InvalidInputError("Invalid email format")

        status = await self._lockout.check(email)
        if status.locked:
            await self._log.log(
                Event.LOGIN_BLOCKED_LOCKED,
                {"email": email, "minutesRemaining": status.minutes_remaining},
                ip,
            )
            raise AccountLockedError(status.minutes_remaining)

        if not is_well_formed_session_token(token):
            await self._log.log(Event.INVALID_TOKEN_FORMAT, {"email": email}, ip)
            raise InvalidInputError("Invalid token format")

        try:
            identity = await self._verifier.verify(token)
        except CredentialVerificationError as e:
            raise await self._fail_login(
                Event.TOKEN_VERIFICATION_FAILED, email, {"error": e.reason}, ip
            ) from e

        subject_id = identity.subject_id
        if (identity.email or "").lower() != email:
            raise await self._fail_login(
                Event.EMAIL_MISMATCH,
                email,
                {"uid": subject_id, "tokenEmail": identity.email},
                ip,
            )

        record = await self._identities.get(subject_id)
        if record is None:
            raise await self._fail_login(Event.USER_NOT_FOUND, email, {"uid": subject_id}, ip)

        try:
            session_token = self._sessions.issue(subject_id)
        except SessionIssueError as e:
            await self._log.log(
                Event.JWT_GENERATION_FAILED,
                {"uid": subject_id, "error": str(e.__cause__ or e)},
                ip,
            )
            raise

        await self._lockout.clear_login_attempts(email)
        await self._best_effort.run(
            lambda: self._identities.touch_last_login(subject_id, self._clock()),
            fallback=False,
            action="Recording last login",
        )
        await self._log.log(Event.LOGIN_SUCCESS, {"uid": subject_id, "email": email}, ip)
        return AuthResult(token=session_token, user=record.summary())

    async def forgot_password(self, raw_email: str, ip_address: str | None = None) -> str:
        """Start a password reset. The acknowledgment never reveals whether the email exists."""
        email = sanitize_email(raw_email)
        if not email:
            raise InvalidInputError("Please include a valid email")

        record = await self._identities.find_by_email(email)
        if record is None:
            await self._log.log(Event.PASSWORD_RESET_UNKNOWN_EMAIL, {"email": email}, ip_address)
            return RESET_ACKNOWLEDGEMENT

        try:
            reset_token, expires = self._sessions.issue_reset_token(record.subject_id)
            await self._identities.set_reset_token(
                record.subject_id, hash_token(reset_token), expires
            )
        except Exception as e:
            logger.exception("Could not prepare password reset for {}", record.subject_id)
            await self._log.log(
                Event.PASSWORD_RESET_FAILED,
                {"uid": record.subject_id, "error": str(e)},
                ip_address,
            )
            return RESET_ACKNOWLEDGEMENT

        sent = await self._email.send_email(
            PASSWORD_RESET,
            record.email,
            {"token": reset_token, "email": record.email, "name": record.display_name},
        )
        await self._log.log(
            Event.PASSWORD_RESET_REQUESTED,
            {"uid": record.subject_id, "email": email, "emailSent": sent},
            ip_address,
        )
        return RESET_ACKNOWLEDGEMENT

    async def reset_password(
        self, reset_token: str, new_password: str, ip_address: str | None = None
    ) -> None:
        if not isinstance(new_password, str) or len(new_password) < MIN_PASSWORD_LENGTH:
            raise InvalidInputError(
                f"Please enter a password with {MIN_PASSWORD_LENGTH} or more characters"
            )

        try:
            subject_id = self._sessions.validate_reset_token(reset_token)
        except SessionValidationError as e:
            await self._log.log(Event.PASSWORD_RESET_FAILED, {"error": e.reason}, ip_address)
            raise InvalidInputError("Invalid or expired reset token") from e

        record = await self._identities.get(subject_id)
        now = self._clock()
        if (
            record is None
            or not token_matches_hash(reset_token, record.reset_password_token_hash)
            or record.reset_password_expires is None
            or record.reset_password_expires < now
        ):
            await self._log.log(
                Event.PASSWORD_RESET_FAILED,
                {"uid": subject_id, "error": "token not current"},
                ip_address,
            )
            raise InvalidInputError("Password reset token is invalid or has expired")

        try:
            await self._provider.update_credential(subject_id, new_password)
        except IdentityProviderError as e:
            await self._log.log(
                Event.PASSWORD_RESET_FAILED, {"uid": subject_id, "error": str(e)}, ip_address
            )
            raise BizhubError("Server error") from e

        await self._identities.clear_reset_token(subject_id)
        await self._log.log(Event.PASSWORD_RESET_SUCCESS, {"uid": subject_id}, ip_address)
