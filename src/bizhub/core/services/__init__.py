"""Core services exports."""

from .auth_service import AuthResult, AuthService
from .best_effort import BestEffort
from .credentials import CredentialVerifier
from .email import EmailDispatcher, HttpEmailDispatcher
from .entitlement import EntitlementGate, EntitlementService
from .identities import IdentityRepository
from .identity_provider import (
    IdentityProvider,
    JWKSCache,
    JWKSCacheInMemory,
    OidcIdentityProviderClient,
)
from .lockout import LockoutTracker
from .payment import PaymentVerifier, PaystackPaymentVerifier, SubscriptionCheckout
from .security_log import SecurityEventLogger
from .session_tokens import SessionTokenService

__all__ = [
    # Auth flows
    "AuthResult",
    "AuthService",
    "CredentialVerifier",
    "LockoutTracker",
    "SessionTokenService",
    # Identity provider
    "IdentityProvider",
    "JWKSCache",
    "JWKSCacheInMemory",
    "OidcIdentityProviderClient",
    # Entitlements
    "EntitlementGate",
    "EntitlementService",
    "IdentityRepository",
    "PaymentVerifier",
    "PaystackPaymentVerifier",
    "SubscriptionCheckout",
    # Side channels
    "BestEffort",
    "EmailDispatcher",
    "HttpEmailDispatcher",
    "SecurityEventLogger",
]
