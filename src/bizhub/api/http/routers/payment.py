"""Payment confirmation endpoint."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.bizhub.api.http.deps import get_checkout, get_client_ip, get_current_subject
from src.bizhub.core.models.identity import PlanType
from src.bizhub.core.models.session import SessionClaims
from src.bizhub.core.services import SubscriptionCheckout

router = APIRouter(prefix="/payment", tags=["payment"])


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    reference: str = Field(min_length=1, description="Payment provider transaction reference")
    plan_type: PlanType


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    claims: SessionClaims = Depends(get_current_subject),
    checkout: SubscriptionCheckout = Depends(get_checkout),
    ip: str = Depends(get_client_ip),
) -> dict[str, Any]:
    subscription = await checkout.confirm(
        claims.subject_id, body.reference, body.plan_type, ip
    )
    return {"msg": "Subscription successful", "subscription": subscription.to_document()}
