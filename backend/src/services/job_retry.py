"""
Retry policy for transitions attempted by background jobs.

Only PersistenceError is retried; every other TransitionError describes a
state of the world that a retry cannot change. Backoff waits are awaited so
a retrying job never blocks the event loop.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from backend.src.services.exceptions import PersistenceError
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_executor import TransitionResult
from backend.src.services.transition_rules import AggregateKind, Status
from backend.src.utils.logging_config import get_logger


logger = get_logger("jobs")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff: float = 1.0
    backoff_multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Delay after the given zero-based attempt."""
        return self.initial_backoff * (self.backoff_multiplier ** attempt)


async def transition_with_retry(
    lifecycle: LifecycleService,
    kind: AggregateKind,
    aggregate_id: str,
    target: Union[Status, str],
    context: TransitionContext,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    job: str = "job",
) -> TransitionResult:
    """
    Run one transition, retrying datastore failures with exponential backoff.

    Raises:
        PersistenceError: After ``policy.max_attempts`` failed attempts
        TransitionError/NotFoundError: Immediately, never retried
    """
    for attempt in range(policy.max_attempts):
        try:
            return lifecycle.transition(kind, aggregate_id, target, context)
        except PersistenceError:
            if attempt < policy.max_attempts - 1:
                backoff = policy.delay(attempt)
                logger.warning(
                    f"{job}: attempt {attempt + 1} for {kind.value} {aggregate_id} failed, "
                    f"retrying in {backoff}s"
                )
                await sleep(backoff)
            else:
                logger.error(
                    f"{job}: {kind.value} {aggregate_id} still failing after "
                    f"{policy.max_attempts} attempts"
                )
                raise
