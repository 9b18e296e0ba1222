"""Security event taxonomy and record."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from src.bizhub.core.models.identity import DocumentModel


class SecurityEventType(str, Enum):
    """Closed set of authentication-relevant event kinds."""

    # registration
    REGISTRATION_SUCCESS = "registration_success"
    REGISTRATION_ERROR = "registration_error"
    INVALID_REGISTRATION_NAME = "invalid_registration_name"
    INVALID_TOKEN_FORMAT_REGISTER = "invalid_token_format_register"
    TOKEN_VERIFICATION_FAILED_REGISTER = "token_verification_failed_register"
    INVALID_EMAIL_REGISTER = "invalid_email_register"
    DUPLICATE_REGISTRATION = "duplicate_registration"
    JWT_GENERATION_FAILED_REGISTER = "jwt_generation_failed_register"

    # login
    LOGIN_SUCCESS = "login_success"
    LOGIN_ERROR = "login_error"
    INVALID_EMAIL_FORMAT = "invalid_email_format"
    INVALID_TOKEN_FORMAT = "invalid_token_format"
    ACCOUNT_LOCKED = "account_locked"
    LOGIN_BLOCKED_LOCKED = "login_blocked_locked"
    TOKEN_VERIFICATION_FAILED = "token_verification_failed"
    EMAIL_MISMATCH = "email_mismatch"
    USER_NOT_FOUND = "user_not_found"
    JWT_GENERATION_FAILED = "jwt_generation_failed"

    # sessions
    TOKEN_VALIDATION_FAILED = "token_validation_failed"

    # password reset
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_UNKNOWN_EMAIL = "password_reset_unknown_email"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    PASSWORD_RESET_FAILED = "password_reset_failed"

    # entitlement
    SUBSCRIPTION_PAYMENT_REQUIRED = "subscription_payment_required"
    SUBSCRIPTION_WRONG_PLAN = "subscription_wrong_plan"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"

    # administration
    ADMIN_SUBSCRIPTION_UPDATED = "admin_subscription_updated"
    ADMIN_USER_UPDATED = "admin_user_updated"
    ADMIN_USER_DELETED = "admin_user_deleted"
    ADMIN_UNLOCK = "admin_unlock"


class SecurityEvent(DocumentModel):
    """Append-only record of one security-relevant occurrence."""

    event_type: SecurityEventType
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    ip_address: str = "unknown"
