"""Payment reference verification."""

from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx
from loguru import logger
from pydantic import BaseModel

from src.bizhub.core.errors import PaymentVerificationError
from src.bizhub.core.models.identity import Entitlement, PlanType
from src.bizhub.core.models.security_event import SecurityEventType
from src.bizhub.core.services.email import SUBSCRIPTION_CONFIRMATION, EmailDispatcher
from src.bizhub.core.services.entitlement import EntitlementService
from src.bizhub.core.services.identities import IdentityRepository
from src.bizhub.core.services.security_log import SecurityEventLogger
from src.bizhub.runtime.config.config_data import PaymentConfig


class PaymentVerification(BaseModel):
    reference: str
    success: bool
    reason: str | None = None


class PaymentVerifier(ABC):
    @abstractmethod
    async def verify_reference(self, reference: str) -> PaymentVerification:
        """Ask the payment provider whether ``reference`` is a settled payment."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class PaystackPaymentVerifier(PaymentVerifier):
    """Verifies transactions via ``GET {base_url}/transaction/verify/{reference}``.

    Anything short of a confirmed success, including provider outages, is
    reported as an unsuccessful verification.
    """

    def __init__(self, config: PaymentConfig, http_client: httpx.AsyncClient | None = None):
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def verify_reference(self, reference: str) -> PaymentVerification:
        if not self._config.secret_key:
            logger.error("Payment provider secret key not configured")
            return PaymentVerification(
                reference=reference, success=False, reason="provider not configured"
            )

        url = f"{self._config.base_url.rstrip('/')}/transaction/verify/{quote(reference, safe='')}"
        try:
            resp = await self._http.get(
                url, headers={"Authorization": f"Bearer {self._config.secret_key}"}
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            return PaymentVerification(
                reference=reference,
                success=False,
                reason=f"provider returned {e.response.status_code}",
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Payment verification for {} failed: {}", reference, e)
            return PaymentVerification(reference=reference, success=False, reason=str(e))

        data = body.get("data") or {}
        if body.get("status") and data.get("status") == "success":
            return PaymentVerification(reference=reference, success=True)
        return PaymentVerification(
            reference=reference,
            success=False,
            reason=f"transaction status {data.get('status')!r}",
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class SubscriptionCheckout:
    """Turns a verified payment into a paid entitlement."""

    def __init__(
        self,
        verifier: PaymentVerifier,
        entitlements: EntitlementService,
        identities: IdentityRepository,
        security_log: SecurityEventLogger,
        email: EmailDispatcher,
    ):
        self._verifier = verifier
        self._entitlements = entitlements
        self._identities = identities
        self._log = security_log
        self._email = email

    async def confirm(
        self,
        subject_id: str,
        reference: str,
        plan: PlanType,
        ip_address: str | None = None,
    ) -> Entitlement:
        """Verify ``reference`` and activate ``plan`` for the subject.

        The confirmation email is sent after the entitlement is committed; a
        failed send does not undo the activation.

        Raises:
            SubjectNotFoundError: No identity record for ``subject_id``
            PaymentVerificationError: The provider did not confirm the payment
        """
        record = await self._identities.require(subject_id)

        verification = await self._verifier.verify_reference(reference)
        if not verification.success:
            await self._log.log(
                SecurityEventType.PAYMENT_VERIFICATION_FAILED,
                {"uid": subject_id, "reference": reference, "error": verification.reason},
                ip_address,
            )
            raise PaymentVerificationError()

        subscription = await self._entitlements.activate_paid_plan(subject_id, plan, reference)
        await self._log.log(
            SecurityEventType.PAYMENT_VERIFIED,
            {"uid": subject_id, "reference": reference, "planType": plan.value},
            ip_address,
        )

        await self._email.send_email(
            SUBSCRIPTION_CONFIRMATION,
            record.email,
            {
                "name": record.display_name,
                "plan_type": plan.value,
                "end_date": subscription.end_date.date().isoformat(),
            },
        )
        return subscription
