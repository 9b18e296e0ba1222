"""Identity record and embedded entitlement models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """Base for records persisted in the document store.

    Documents are stored with camelCase keys; Python code uses snake_case.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def assume_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted to it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(assume_utc)]


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class PlanType(str, Enum):
    """Subscription plans. ``ALL`` grants every vertical."""

    PHARMACY = "Pharmacy"
    INVENTORY = "Inventory"
    SCHOOL = "School"
    OFFICE = "Office"
    ALL = "All"


class Entitlement(DocumentModel):
    """Subscription state embedded in an identity record."""

    is_active: bool = Field(default=False, description="Stored activation flag")
    plan_type: PlanType | None = Field(default=None, description="Plan held")
    start_date: UtcDatetime | None = Field(default=None, description="Plan start")
    end_date: UtcDatetime | None = Field(default=None, description="Plan end")
    payment_reference: str | None = Field(
        default=None, description="Payment correlation id or trial marker"
    )
    is_trial: bool = Field(default=False, description="Whether this is the free trial")

    def is_expired(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date < now

    def effective_is_active(self, now: datetime) -> bool:
        """Derived activation: the stored flag can be stale once ``end_date`` passes."""
        return self.is_active and not self.is_expired(now)

    def grants(self, vertical: PlanType) -> bool:
        return self.plan_type == PlanType.ALL or self.plan_type == vertical


class IdentityRecord(DocumentModel):
    """One record per subject, keyed by the identity provider's subject id."""

    subject_id: str = Field(description="Stable id assigned by the identity provider")
    email: str = Field(description="Normalized lowercase email")
    display_name: str = Field(alias="name", description="Display name")
    role: Role = Field(default=Role.USER)
    subscription: Entitlement = Field(default_factory=Entitlement)
    created_at: UtcDatetime
    last_login: UtcDatetime | None = None
    reset_password_token_hash: str | None = None
    reset_password_expires: UtcDatetime | None = None
    version: int = Field(default=0, description="Compare-and-swap counter")

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def public_view(self) -> dict:
        """Document form without password-reset secrets."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"reset_password_token_hash", "reset_password_expires", "version"},
        )

    def summary(self) -> dict:
        """Subject summary returned by register and login."""
        return {
            "id": self.subject_id,
            "name": self.display_name,
            "email": self.email,
            "role": self.role.value,
            "subscription": self.subscription.to_document(),
        }
