"""Domain models for identities, entitlements, lockouts and security events."""

from .identity import Entitlement, IdentityRecord, PlanType, Role
from .lockout import LockoutRecord, LockoutStatus
from .security_event import SecurityEvent, SecurityEventType
from .session import ExternalIdentity, SessionClaims

__all__ = [
    "Entitlement",
    "ExternalIdentity",
    "IdentityRecord",
    "LockoutRecord",
    "LockoutStatus",
    "PlanType",
    "Role",
    "SecurityEvent",
    "SecurityEventType",
    "SessionClaims",
]
