"""Fail-open policy for non-critical infrastructure writes."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

T = TypeVar("T")


class BestEffort:
    """Runs an operation and absorbs infrastructure failures.

    Applied only where losing a write must not block the request: lockout
    bookkeeping and security event logging. A failure is logged and the
    caller receives ``fallback`` instead.
    """

    def __init__(self, component: str):
        self.component = component

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        fallback: T,
        action: str,
    ) -> T:
        try:
            return await operation()
        except Exception as e:
            logger.bind(component=self.component).error(
                "{} failed, continuing without it: {}", action, e
            )
            return fallback
