"""Per-email brute-force lockout record."""

import math
from datetime import datetime

from pydantic import BaseModel, Field

from src.bizhub.core.models.identity import DocumentModel, UtcDatetime


class LockoutRecord(DocumentModel):
    """Failed-login counter keyed by email, independent of the identity record."""

    email: str
    failed_attempts: int = Field(default=0, ge=0)
    is_locked: bool = False
    locked_until: UtcDatetime | None = None
    last_attempt: UtcDatetime
    created_at: UtcDatetime | None = None
    version: int = 0

    def is_locked_at(self, now: datetime) -> bool:
        return (
            self.is_locked
            and self.locked_until is not None
            and now < self.locked_until
        )

    def lock_expired_at(self, now: datetime) -> bool:
        return self.is_locked and (self.locked_until is None or now >= self.locked_until)


class LockoutStatus(BaseModel):
    """Outcome of a pre-check."""

    locked: bool
    minutes_remaining: int | None = None

    @classmethod
    def open(cls) -> "LockoutStatus":
        return cls(locked=False)

    @classmethod
    def locked_until(cls, locked_until: datetime, now: datetime) -> "LockoutStatus":
        seconds = (locked_until - now).total_seconds()
        return cls(locked=True, minutes_remaining=max(1, math.ceil(seconds / 60)))
