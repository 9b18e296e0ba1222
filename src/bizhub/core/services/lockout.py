"""Per-email brute-force lockout tracking.

A record moves between two states. It is OPEN while ``isLocked`` is false,
or once ``lockedUntil`` has passed. It is LOCKED after too many failures
inside the reset window, until ``lockedUntil``. Failures separated by more
than the reset window restart the counter at one.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from loguru import logger

from src.bizhub.core.errors import ConcurrentModificationError
from src.bizhub.core.models.lockout import LockoutRecord, LockoutStatus
from src.bizhub.core.services.best_effort import BestEffort
from src.bizhub.core.services.security_log import utc_now
from src.bizhub.core.storage.document_store import DocumentStore
from src.bizhub.runtime.config.config_data import LockoutConfig

LOGIN_ATTEMPTS = "loginAttempts"

Transform = Callable[[LockoutRecord | None, datetime], LockoutRecord | None]


class LockoutTracker:
    """Failed-login accounting keyed by normalized email.

    Every write is a compare-and-set on the record version. The public
    login-path methods fail open: if the store is unreachable the caller is
    treated as not locked and the failure is only logged.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: LockoutConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        policy: BestEffort | None = None,
        max_retries: int = 5,
    ):
        self._store = store
        self._config = config or LockoutConfig()
        self._clock = clock
        self._policy = policy or BestEffort("lockout")
        self._max_retries = max_retries

    @property
    def reset_window(self) -> timedelta:
        return timedelta(minutes=self._config.reset_window_minutes)

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self._config.lock_duration_minutes)

    async def get(self, email: str) -> LockoutRecord | None:
        document = await self._store.get(LOGIN_ATTEMPTS, email)
        return LockoutRecord.model_validate(document) if document else None

    async def _mutate(self, email: str, transform: Transform) -> LockoutRecord | None:
        """Apply ``transform`` with optimistic concurrency.

        ``transform`` returns the new record, or None to leave the stored one
        untouched. Returns the record as written (or as found).
        """
        for _ in range(self._max_retries):
            current = await self.get(email)
            updated = transform(current, self._clock())
            if updated is None:
                return current

            expected = current.version if current else None
            if await self._store.compare_and_set(
                LOGIN_ATTEMPTS, email, expected, updated.to_document()
            ):
                return updated.model_copy(update={"version": (expected or 0) + 1})

            logger.debug("Lockout record for {} changed concurrently, retrying", email)

        raise ConcurrentModificationError(f"Lockout record for {email} kept changing")

    async def check(self, email: str) -> LockoutStatus:
        """Pre-check a login attempt. Expired locks are reset on the way."""
        return await self._policy.run(
            lambda: self._check(email),
            fallback=LockoutStatus.open(),
            action="Lockout check",
        )

    async def _check(self, email: str) -> LockoutStatus:
        record = await self.get(email)
        if record is None:
            return LockoutStatus.open()

        now = self._clock()
        if record.is_locked_at(now):
            return LockoutStatus.locked_until(record.locked_until, now)

        if record.is_locked:

            def expire(current: LockoutRecord | None, at: datetime) -> LockoutRecord | None:
                if current is None or not current.lock_expired_at(at):
                    return None
                return current.model_copy(
                    update={"is_locked": False, "failed_attempts": 0, "locked_until": None}
                )

            await self._mutate(email, expire)

        return LockoutStatus.open()

    async def record_failed_login(self, email: str) -> LockoutRecord | None:
        """Count one failure. Returns the updated record, or None if it could not be stored."""
        return await self._policy.run(
            lambda: self._mutate(
                email, lambda current, now: self._count_failure(email, current, now)
            ),
            fallback=None,
            action="Recording failed login",
        )

    def _count_failure(
        self, email: str, current: LockoutRecord | None, now: datetime
    ) -> LockoutRecord:
        if current is None:
            return LockoutRecord(
                email=email,
                failed_attempts=1,
                last_attempt=now,
                created_at=now,
            )

        if now - current.last_attempt > self.reset_window:
            attempts = 1
        else:
            attempts = current.failed_attempts + 1

        locked = attempts >= self._config.max_failed_attempts
        return current.model_copy(
            update={
                "failed_attempts": attempts,
                "is_locked": locked,
                "locked_until": now + self.lock_duration if locked else None,
                "last_attempt": now,
            }
        )

    async def clear_login_attempts(self, email: str) -> None:
        """Reset the counter after a successful login. No-op without a record."""
        await self._policy.run(
            lambda: self._mutate(email, self._clear),
            fallback=None,
            action="Clearing login attempts",
        )

    async def unlock(self, email: str) -> bool:
        """Administrative reset. Store errors propagate.

        Returns:
            True if a lockout record existed
        """
        record = await self._mutate(email, self._clear)
        return record is not None

    @staticmethod
    def _clear(current: LockoutRecord | None, now: datetime) -> LockoutRecord | None:
        if current is None:
            return None
        return current.model_copy(
            update={
                "failed_attempts": 0,
                "is_locked": False,
                "locked_until": None,
                "last_attempt": now,
            }
        )
