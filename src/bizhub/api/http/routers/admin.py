"""Administrative endpoints: user management, subscriptions and lockouts."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.bizhub.api.http.deps import (
    get_client_ip,
    get_entitlement_service,
    get_identity_repository,
    get_lockout_tracker,
    get_security_log,
    require_admin,
)
from src.bizhub.core.errors import InvalidInputError, SubjectNotFoundError
from src.bizhub.core.models.identity import IdentityRecord, PlanType, Role, UtcDatetime
from src.bizhub.core.models.security_event import SecurityEventType
from src.bizhub.core.security import sanitize_email, sanitize_free_text
from src.bizhub.core.services import (
    EntitlementService,
    IdentityRepository,
    LockoutTracker,
    SecurityEventLogger,
)
from src.bizhub.core.services.auth_service import MAX_NAME_LENGTH, MIN_NAME_LENGTH

router = APIRouter(prefix="/admin", tags=["admin"])


def _user_view(record: IdentityRecord) -> dict[str, Any]:
    return {"id": record.subject_id, **record.public_view()}


class SubscriptionUpdateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_active: bool | None = None
    plan_type: PlanType | None = None
    end_date: UtcDatetime | None = None


class UserUpdateRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    role: Role | None = None


class BulkActivateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_ids: list[str] = Field(default_factory=list)
    plan_type: PlanType
    duration: int | None = Field(default=None, ge=1, description="Months to activate")


@router.get("/users")
async def list_users(
    search: str | None = None,
    role: Literal["all", "user", "admin"] = "all",
    subscription_status: Literal["all", "active", "inactive"] = Query(
        default="all", alias="subscriptionStatus"
    ),
    _admin: IdentityRecord = Depends(require_admin),
    identities: IdentityRepository = Depends(get_identity_repository),
) -> list[dict[str, Any]]:
    """Users newest first, filtered by role, stored activation flag and a name/email search."""
    records = await identities.list_identities(
        role=None if role == "all" else Role(role),
        is_active=None if subscription_status == "all" else subscription_status == "active",
        search=search,
    )
    return [_user_view(r) for r in records]


@router.get("/users/{subject_id}")
async def get_user(
    subject_id: str,
    _admin: IdentityRecord = Depends(require_admin),
    identities: IdentityRepository = Depends(get_identity_repository),
) -> dict[str, Any]:
    return _user_view(await identities.require(subject_id))


@router.put("/users/{subject_id}")
async def update_user(
    subject_id: str,
    body: UserUpdateRequest,
    admin: IdentityRecord = Depends(require_admin),
    identities: IdentityRepository = Depends(get_identity_repository),
    security_log: SecurityEventLogger = Depends(get_security_log),
    ip: str = Depends(get_client_ip),
) -> dict[str, Any]:
    """Edit a subject's name, email or role."""
    await identities.require(subject_id)
    changed = sorted(body.model_dump(exclude_none=True))
    if not changed:
        raise InvalidInputError("No changes provided")

    name = None
    if body.name is not None:
        name = sanitize_free_text(body.name, MAX_NAME_LENGTH)
        if not name or len(name) < MIN_NAME_LENGTH:
            raise InvalidInputError(
                f"Name must be between {MIN_NAME_LENGTH}-{MAX_NAME_LENGTH} characters"
            )
    email = None
    if body.email is not None:
        email = sanitize_email(body.email)
        if email is None:
            raise InvalidInputError("Invalid email format")

    record = await identities.update_profile(
        subject_id, display_name=name, email=email, role=body.role
    )
    await security_log.log(
        SecurityEventType.ADMIN_USER_UPDATED,
        {"adminId": admin.subject_id, "userId": subject_id, "changes": changed},
        ip,
    )
    return _user_view(record)


@router.put("/users/{subject_id}/subscription")
async def update_subscription(
    subject_id: str,
    body: SubscriptionUpdateRequest,
    admin: IdentityRecord = Depends(require_admin),
    identities: IdentityRepository = Depends(get_identity_repository),
    entitlements: EntitlementService = Depends(get_entitlement_service),
    security_log: SecurityEventLogger = Depends(get_security_log),
    ip: str = Depends(get_client_ip),
) -> dict[str, Any]:
    """Revoke, extend, or change a subject's plan."""
    await identities.require(subject_id)
    record = await entitlements.admin_update(
        subject_id,
        is_active=body.is_active,
        plan_type=body.plan_type,
        end_date=body.end_date,
    )
    await security_log.log(
        SecurityEventType.ADMIN_SUBSCRIPTION_UPDATED,
        {
            "adminId": admin.subject_id,
            "userId": subject_id,
            "changes": body.model_dump(mode="json", by_alias=True, exclude_none=True),
        },
        ip,
    )
    return _user_view(record)


@router.delete("/users/{subject_id}")
async def delete_user(
    subject_id: str,
    admin: IdentityRecord = Depends(require_admin),
    identities: IdentityRepository = Depends(get_identity_repository),
    security_log: SecurityEventLogger = Depends(get_security_log),
    ip: str = Depends(get_client_ip),
) -> dict[str, str]:
    if subject_id == admin.subject_id:
        raise InvalidInputError("Cannot delete your own account")
    if not await identities.delete(subject_id):
        raise SubjectNotFoundError()

    await security_log.log(
        SecurityEventType.ADMIN_USER_DELETED,
        {"adminId": admin.subject_id, "userId": subject_id},
        ip,
    )
    return {"msg": "User removed"}


@router.get("/expiring-subscriptions")
async def expiring_subscriptions(
    days: int = Query(default=7, ge=0, le=365),
    _admin: IdentityRecord = Depends(require_admin),
    entitlements: EntitlementService = Depends(get_entitlement_service),
) -> list[dict[str, Any]]:
    return [_user_view(r) for r in await entitlements.expiring_within(days)]


@router.post("/bulk/activate")
async def bulk_activate(
    body: BulkActivateRequest,
    _admin: IdentityRecord = Depends(require_admin),
    entitlements: EntitlementService = Depends(get_entitlement_service),
) -> dict[str, Any]:
    """Activate many subjects in one atomic write."""
    if not body.user_ids:
        raise InvalidInputError("Please provide user IDs")

    result = await entitlements.bulk_activate(body.user_ids, body.plan_type, body.duration)
    return {
        "msg": f"{len(result.activated)} subscriptions activated",
        "activated": result.activated,
        "missing": result.missing,
    }


@router.post("/lockouts/{email}/unlock")
async def unlock_account(
    email: str,
    admin: IdentityRecord = Depends(require_admin),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    security_log: SecurityEventLogger = Depends(get_security_log),
    ip: str = Depends(get_client_ip),
) -> dict[str, Any]:
    normalized = sanitize_email(email)
    if normalized is None:
        raise InvalidInputError("Invalid email format")

    existed = await lockout.unlock(normalized)
    await security_log.log(
        SecurityEventType.ADMIN_UNLOCK,
        {"adminId": admin.subject_id, "email": normalized},
        ip,
    )
    return {"msg": "Account unlocked", "hadLockout": existed}


@router.get("/stats")
async def platform_stats(
    _admin: IdentityRecord = Depends(require_admin),
    entitlements: EntitlementService = Depends(get_entitlement_service),
) -> dict[str, dict[str, int]]:
    return await entitlements.statistics()


@router.get("/activity")
async def recent_activity(
    limit: int = Query(default=50, ge=1, le=500),
    _admin: IdentityRecord = Depends(require_admin),
    identities: IdentityRepository = Depends(get_identity_repository),
) -> dict[str, list[dict[str, Any]]]:
    """Most recent registrations, newest first."""
    records = await identities.list_identities()
    return {
        "recentUsers": [
            {
                "id": r.subject_id,
                "name": r.display_name,
                "email": r.email,
                "createdAt": r.created_at,
                "subscription": r.subscription.to_document(),
            }
            for r in records[:limit]
        ]
    }
