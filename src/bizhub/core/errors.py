"""Domain exceptions rendered by the HTTP layer.

Each exception carries the HTTP status it maps to, a public message that is
safe to return to callers, and optional camelCase signals merged into the
response body.
"""

from typing import Any


class BizhubError(Exception):
    """Base for errors that translate directly into an HTTP response."""

    status_code: int = 500
    default_message: str = "Server error"

    def __init__(self, message: str | None = None, **signals: Any):
        self.message = message or self.default_message
        self.signals = {k: v for k, v in signals.items() if v is not None}
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        return {"detail": self.message, **self.signals}


class InvalidInputError(BizhubError):
    """Malformed input. Never counts against the lockout tracker."""

    status_code = 400
    default_message = "Invalid input"


class CredentialVerificationError(BizhubError):
    """External credential rejected, unverifiable, or timed out."""

    status_code = 401
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None, *, reason: str = "rejected"):
        super().__init__(message)
        self.reason = reason


class SessionValidationError(BizhubError):
    """Session token failed validation. ``reason`` is logged, never returned."""

    status_code = 401
    default_message = "Token is not valid"

    def __init__(self, reason: str):
        super().__init__(self.default_message)
        self.reason = reason


class MissingSessionError(BizhubError):
    status_code = 401
    default_message = "No token, authorization denied"


class SessionIssueError(BizhubError):
    status_code = 500
    default_message = "Error generating token"


class AccountLockedError(BizhubError):
    status_code = 429

    def __init__(self, minutes_remaining: int):
        super().__init__(
            f"Account locked due to too many failed attempts. "
            f"Try again in {minutes_remaining} minutes.",
            accountLocked=True,
            minutesRemaining=minutes_remaining,
        )
        self.minutes_remaining = minutes_remaining


class AdminRequiredError(BizhubError):
    status_code = 403
    default_message = "Access denied. Admin only."


class SubjectNotFoundError(BizhubError):
    status_code = 404
    default_message = "User not found"


class DuplicateIdentityError(BizhubError):
    status_code = 400
    default_message = "User already exists"


class PaymentRequiredError(BizhubError):
    """No usable entitlement: inactive or past its end date."""

    status_code = 403
    default_message = "Active subscription required"

    def __init__(self, message: str | None = None):
        super().__init__(message, requiresPayment=True)


class WrongPlanError(BizhubError):
    """Entitlement is valid but does not cover the requested vertical."""

    status_code = 403

    def __init__(self, required_plan: str, current_plan: str | None):
        super().__init__(
            f"Access denied. This feature requires {required_plan} subscription. "
            f"You have {current_plan}.",
            wrongSystem=True,
            requiredPlan=required_plan,
            currentPlan=current_plan,
        )


class PaymentVerificationError(BizhubError):
    status_code = 400
    default_message = "Payment verification failed"


class StoreError(RuntimeError):
    """Document store unavailable or rejected an operation."""


class ConcurrentModificationError(StoreError):
    """Compare-and-swap retries exhausted."""


class IdentityProviderError(RuntimeError):
    """Identity provider rejected a token or could not be reached."""
