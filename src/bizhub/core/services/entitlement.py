"""Entitlement checks and subscription lifecycle writes."""

import calendar
from collections.abc import Callable
from datetime import datetime, timedelta

from loguru import logger
from pydantic import BaseModel

from src.bizhub.core.errors import PaymentRequiredError, WrongPlanError
from src.bizhub.core.models.identity import Entitlement, IdentityRecord, PlanType
from src.bizhub.core.services.identities import USERS, IdentityRepository
from src.bizhub.core.services.security_log import utc_now
from src.bizhub.runtime.config.config_data import EntitlementConfig


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def trial_reference(subject_id: str) -> str:
    return f"TRIAL-{subject_id[:8]}"


class EntitlementGate:
    """Decides whether a subject may use the product, or one vertical of it.

    Pure read-and-decide: the gate never writes. A stored ``isActive`` flag
    whose ``endDate`` has passed is treated as inactive without being rewritten.
    """

    def __init__(
        self, identities: IdentityRepository, clock: Callable[[], datetime] = utc_now
    ):
        self._identities = identities
        self._clock = clock

    @staticmethod
    def decide(
        record: IdentityRecord, now: datetime, required: PlanType | None = None
    ) -> None:
        """Raise if ``record`` is not entitled at ``now``.

        Raises:
            PaymentRequiredError: No active, unexpired entitlement
            WrongPlanError: Entitlement does not cover ``required``
        """
        if record.is_admin:
            return

        subscription = record.subscription
        if not subscription.is_active:
            raise PaymentRequiredError("Active subscription required")
        if subscription.is_expired(now):
            raise PaymentRequiredError("Subscription has expired")
        if required is not None and not subscription.grants(required):
            current = subscription.plan_type.value if subscription.plan_type else None
            raise WrongPlanError(required.value, current)

    async def authorize(
        self, subject_id: str, required: PlanType | None = None
    ) -> IdentityRecord:
        """Load the subject and admit it, or raise.

        The returned record has its password-reset fields cleared.

        Raises:
            SubjectNotFoundError: No identity record for ``subject_id``
            PaymentRequiredError: No active, unexpired entitlement
            WrongPlanError: Entitlement does not cover ``required``
        """
        record = await self._identities.require(subject_id)
        self.decide(record, self._clock(), required)
        return record.model_copy(
            update={"reset_password_token_hash": None, "reset_password_expires": None}
        )

    def is_effectively_active(self, record: IdentityRecord) -> bool:
        return record.subscription.effective_is_active(self._clock())


class BulkActivationResult(BaseModel):
    activated: list[str]
    missing: list[str]


class EntitlementService:
    """Writes to the subscription embedded in identity records."""

    def __init__(
        self,
        identities: IdentityRepository,
        config: EntitlementConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._identities = identities
        self._config = config or EntitlementConfig()
        self._clock = clock

    def start_trial(self, subject_id: str) -> Entitlement:
        """Entitlement granted at registration: every vertical for the trial period."""
        now = self._clock()
        return Entitlement(
            is_active=True,
            plan_type=PlanType.ALL,
            start_date=now,
            end_date=now + timedelta(days=self._config.trial_days),
            payment_reference=trial_reference(subject_id),
            is_trial=True,
        )

    async def activate_paid_plan(
        self, subject_id: str, plan: PlanType, reference: str
    ) -> Entitlement:
        """Replace the subject's entitlement after a verified payment."""
        now = self._clock()
        subscription = Entitlement(
            is_active=True,
            plan_type=plan,
            start_date=now,
            end_date=add_months(now, self._config.paid_plan_months),
            payment_reference=reference,
            is_trial=False,
        )
        await self._identities.mutate(
            subject_id, lambda r: r.model_copy(update={"subscription": subscription})
        )
        logger.info("Activated {} plan for {} ({})", plan.value, subject_id, reference)
        return subscription

    async def admin_update(
        self,
        subject_id: str,
        *,
        is_active: bool | None = None,
        plan_type: PlanType | None = None,
        end_date: datetime | None = None,
    ) -> IdentityRecord:
        """Revoke, extend, or change an entitlement. Unset arguments are left alone."""
        now = self._clock()

        def apply(record: IdentityRecord) -> IdentityRecord:
            changes: dict = {}
            if is_active is not None:
                changes["is_active"] = is_active
            if plan_type is not None:
                changes["plan_type"] = plan_type
            if end_date is not None:
                changes["end_date"] = end_date
            if is_active and record.subscription.start_date is None:
                changes["start_date"] = now
            # Validated rather than copied so a naive end date is read as UTC
            subscription = Entitlement.model_validate(
                {**record.subscription.model_dump(), **changes}
            )
            return record.model_copy(update={"subscription": subscription})

        return await self._identities.mutate(subject_id, apply)

    async def bulk_activate(
        self,
        subject_ids: list[str],
        plan: PlanType,
        months: int | None = None,
    ) -> BulkActivationResult:
        """Activate many subjects in one atomic batch. Unknown ids are skipped."""
        now = self._clock()
        end = add_months(now, months or self._config.bulk_activation_months)

        activated, missing = [], []
        batch = self._identities.store.batch()
        for subject_id in dict.fromkeys(subject_ids):
            if await self._identities.get(subject_id) is None:
                missing.append(subject_id)
                continue
            batch.update(
                USERS,
                subject_id,
                {
                    "subscription.isActive": True,
                    "subscription.planType": plan.value,
                    "subscription.startDate": now.isoformat(),
                    "subscription.endDate": end.isoformat(),
                },
            )
            activated.append(subject_id)

        await batch.commit()
        return BulkActivationResult(activated=activated, missing=missing)

    async def expiring_within(self, days: int) -> list[IdentityRecord]:
        """Active subscriptions ending between now and ``days`` from now, soonest first."""
        now = self._clock()
        horizon = now + timedelta(days=days)
        records = await self._identities.list_identities(is_active=True)
        expiring = [
            r
            for r in records
            if r.subscription.end_date is not None
            and now <= r.subscription.end_date <= horizon
        ]
        return sorted(expiring, key=lambda r: r.subscription.end_date)

    async def statistics(
        self, recent_days: int = 30, expiring_days: int = 7
    ) -> dict[str, dict[str, int]]:
        """Dashboard counts.

        Activity is the derived flag, so a plan past its end date counts as
        inactive even while its stored flag is still set.
        """
        now = self._clock()
        records = await self._identities.list_identities()
        active = [r for r in records if r.subscription.effective_is_active(now)]
        since = now - timedelta(days=recent_days)
        horizon = now + timedelta(days=expiring_days)

        per_plan = {
            plan.value.lower(): sum(1 for r in active if r.subscription.plan_type == plan)
            for plan in PlanType
        }
        return {
            "users": {
                "total": len(records),
                "active": len(active),
                "inactive": len(records) - len(active),
                "admins": sum(1 for r in records if r.is_admin),
                "recentRegistrations": sum(1 for r in records if r.created_at >= since),
            },
            "subscriptions": {
                "active": len(active),
                "expiring": sum(
                    1
                    for r in active
                    if r.subscription.end_date is not None
                    and r.subscription.end_date <= horizon
                ),
                **per_plan,
            },
        }
