"""Entitlement-gated entry points for each business vertical.

Vertical handlers themselves live elsewhere; each router here only shows the
identity and entitlement a downstream handler would receive.
"""

from typing import Any

from fastapi import APIRouter, Depends

from src.bizhub.api.http.deps import get_entitlement_gate, require_subscription
from src.bizhub.core.models.identity import IdentityRecord, PlanType
from src.bizhub.core.services import EntitlementGate

VERTICALS: dict[str, PlanType] = {
    "pharmacy": PlanType.PHARMACY,
    "inventory": PlanType.INVENTORY,
    "school": PlanType.SCHOOL,
    "office": PlanType.OFFICE,
}


def build_vertical_router(slug: str, plan: PlanType) -> APIRouter:
    router = APIRouter(prefix=f"/{slug}", tags=[slug])

    @router.get("/access", name=f"{slug}_access")
    async def access(
        identity: IdentityRecord = Depends(require_subscription(plan)),
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> dict[str, Any]:
        subscription = identity.subscription
        return {
            "vertical": plan.value,
            "subjectId": identity.subject_id,
            "role": identity.role.value,
            "planType": subscription.plan_type.value if subscription.plan_type else None,
            "isActive": gate.is_effectively_active(identity),
        }

    return router


routers = [build_vertical_router(slug, plan) for slug, plan in VERTICALS.items()]
