"""FastAPI dependency implementations."""

from __future__ import annotations

from fastapi import Depends, Request

from src.bizhub.api.http.app_data import ApplicationDependencies
from src.bizhub.core.errors import (
    AdminRequiredError,
    MissingSessionError,
    PaymentRequiredError,
    SessionValidationError,
    WrongPlanError,
)
from src.bizhub.core.models.identity import IdentityRecord, PlanType
from src.bizhub.core.models.security_event import SecurityEventType
from src.bizhub.core.models.session import SessionClaims
from src.bizhub.core.security import extract_client_ip
from src.bizhub.core.services import (
    AuthService,
    EntitlementGate,
    EntitlementService,
    IdentityRepository,
    LockoutTracker,
    SecurityEventLogger,
    SessionTokenService,
    SubscriptionCheckout,
)


def get_app_dependencies(request: Request) -> ApplicationDependencies:
    return request.app.state.app_dependencies


def get_auth_service(request: Request) -> AuthService:
    """Get the auth flow orchestrator."""
    return get_app_dependencies(request).auth_service


def get_session_service(request: Request) -> SessionTokenService:
    """Get the session token service instance."""
    return get_app_dependencies(request).sessions


def get_security_log(request: Request) -> SecurityEventLogger:
    """Get the security event logger instance."""
    return get_app_dependencies(request).security_log


def get_lockout_tracker(request: Request) -> LockoutTracker:
    return get_app_dependencies(request).lockout


def get_identity_repository(request: Request) -> IdentityRepository:
    return get_app_dependencies(request).identities


def get_entitlement_gate(request: Request) -> EntitlementGate:
    return get_app_dependencies(request).entitlement_gate


def get_entitlement_service(request: Request) -> EntitlementService:
    return get_app_dependencies(request).entitlements


def get_checkout(request: Request) -> SubscriptionCheckout:
    return get_app_dependencies(request).checkout


def get_client_ip(request: Request) -> str:
    trusted = get_app_dependencies(request).config.app.trusted_proxies
    return extract_client_ip(request, trusted)


async def get_current_subject(
    request: Request,
    sessions: SessionTokenService = Depends(get_session_service),
    security_log: SecurityEventLogger = Depends(get_security_log),
) -> SessionClaims:
    """Authenticate the request from its session token header.

    The caller only ever sees a generic rejection; the specific reason goes to
    the security log.
    """
    header = get_app_dependencies(request).config.session.header_name
    token = request.headers.get(header)
    if not token:
        raise MissingSessionError()

    try:
        claims = sessions.validate(token)
    except SessionValidationError as e:
        await security_log.log(
            SecurityEventType.TOKEN_VALIDATION_FAILED,
            {"error": e.reason, "path": request.url.path},
            get_client_ip(request),
        )
        raise

    request.state.subject_id = claims.subject_id
    return claims


async def get_current_identity(
    claims: SessionClaims = Depends(get_current_subject),
    identities: IdentityRepository = Depends(get_identity_repository),
) -> IdentityRecord:
    """The session subject's identity record; 404 if it no longer exists."""
    return await identities.require(claims.subject_id)


async def require_admin(
    claims: SessionClaims = Depends(get_current_subject),
    identities: IdentityRepository = Depends(get_identity_repository),
) -> IdentityRecord:
    record = await identities.get(claims.subject_id)
    if record is None or not record.is_admin:
        raise AdminRequiredError()
    return record


def require_subscription(vertical: PlanType | None = None):
    """Dependency factory gating a route on the subject's entitlement.

    Args:
        vertical: Plan the route belongs to, or None for any active plan

    Returns:
        Dependency yielding the admitted identity record
    """

    async def dependency(
        request: Request,
        claims: SessionClaims = Depends(get_current_subject),
        gate: EntitlementGate = Depends(get_entitlement_gate),
        security_log: SecurityEventLogger = Depends(get_security_log),
    ) -> IdentityRecord:
        try:
            return await gate.authorize(claims.subject_id, vertical)
        except PaymentRequiredError as e:
            await security_log.log(
                SecurityEventType.SUBSCRIPTION_PAYMENT_REQUIRED,
                {"uid": claims.subject_id, "reason": e.message},
                get_client_ip(request),
            )
            raise
        except WrongPlanError as e:
            await security_log.log(
                SecurityEventType.SUBSCRIPTION_WRONG_PLAN,
                {"uid": claims.subject_id, **e.signals},
                get_client_ip(request),
            )
            raise

    return dependency
