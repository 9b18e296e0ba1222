from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from src.bizhub.api.http.middleware.limiter import RateLimiters
from src.bizhub.core.services import (
    AuthService,
    CredentialVerifier,
    EmailDispatcher,
    EntitlementGate,
    EntitlementService,
    HttpEmailDispatcher,
    IdentityProvider,
    IdentityRepository,
    LockoutTracker,
    OidcIdentityProviderClient,
    PaymentVerifier,
    PaystackPaymentVerifier,
    SecurityEventLogger,
    SessionTokenService,
    SubscriptionCheckout,
)
from src.bizhub.core.services.security_log import utc_now
from src.bizhub.core.storage import DocumentStore
from src.bizhub.runtime.config.config_data import ConfigData


@dataclass
class ApplicationDependencies:
    config: ConfigData
    store: DocumentStore
    identity_provider: IdentityProvider
    payment_verifier: PaymentVerifier
    email_dispatcher: EmailDispatcher
    security_log: SecurityEventLogger
    lockout: LockoutTracker
    sessions: SessionTokenService
    identities: IdentityRepository
    entitlement_gate: EntitlementGate
    entitlements: EntitlementService
    auth_service: AuthService
    checkout: SubscriptionCheckout
    rate_limiters: RateLimiters

    async def aclose(self) -> None:
        """Release every client this container owns."""
        for name, resource in (
            ("identity provider", self.identity_provider),
            ("payment verifier", self.payment_verifier),
            ("email dispatcher", self.email_dispatcher),
            ("document store", self.store),
        ):
            try:
                await resource.aclose()
            except Exception as e:
                logger.error("Failed to close {}: {}", name, e)
        await self.rate_limiters.close()


def build_dependencies(
    config: ConfigData,
    store: DocumentStore,
    *,
    identity_provider: IdentityProvider | None = None,
    payment_verifier: PaymentVerifier | None = None,
    email_dispatcher: EmailDispatcher | None = None,
    rate_limiters: RateLimiters | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ApplicationDependencies:
    """Wire the service graph once per process.

    Collaborators that talk to the outside world can be supplied; otherwise
    the HTTP-backed implementations are constructed from ``config``.
    """
    identity_provider = identity_provider or OidcIdentityProviderClient(
        config.identity_provider, clock=clock
    )
    payment_verifier = payment_verifier or PaystackPaymentVerifier(config.payment)
    email_dispatcher = email_dispatcher or HttpEmailDispatcher(config.email)
    rate_limiters = rate_limiters or RateLimiters(
        config.rate_limiter, trusted_proxies=config.app.trusted_proxies
    )

    retries = config.store.cas_retries
    security_log = SecurityEventLogger(store, clock=clock)
    lockout = LockoutTracker(store, config.lockout, clock=clock, max_retries=retries)
    sessions = SessionTokenService(config.session, clock=clock)
    identities = IdentityRepository(store, max_retries=retries)
    entitlement_gate = EntitlementGate(identities, clock=clock)
    entitlements = EntitlementService(identities, config.entitlement, clock=clock)
    verifier = CredentialVerifier(
        identity_provider,
        timeout_seconds=config.identity_provider.verification_timeout_seconds,
    )

    auth_service = AuthService(
        identities=identities,
        entitlements=entitlements,
        lockout=lockout,
        sessions=sessions,
        verifier=verifier,
        provider=identity_provider,
        security_log=security_log,
        email=email_dispatcher,
        clock=clock,
    )
    checkout = SubscriptionCheckout(
        payment_verifier, entitlements, identities, security_log, email_dispatcher
    )

    return ApplicationDependencies(
        config=config,
        store=store,
        identity_provider=identity_provider,
        payment_verifier=payment_verifier,
        email_dispatcher=email_dispatcher,
        security_log=security_log,
        lockout=lockout,
        sessions=sessions,
        identities=identities,
        entitlement_gate=entitlement_gate,
        entitlements=entitlements,
        auth_service=auth_service,
        checkout=checkout,
        rate_limiters=rate_limiters,
    )
