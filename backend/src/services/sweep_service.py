"""
Periodic sweep jobs.

Catch-up safety net for transitions the scheduler missed or never scheduled:
- start_sweep: PUBLISHED events whose scheduled start has passed -> LIVE
- end_sweep: LIVE events whose scheduled end has passed -> ENDED
- no_show_sweep: STAKED tickets of ended events past the grace period -> FORFEITED

Sweeps go through LifecycleService like every other trigger, so running
them alongside the scheduler is safe: an aggregate another path already
moved fails with InvalidTransition/TerminalState/ConcurrentModification and
is counted as skipped. PersistenceError is retried with exponential backoff;
every other failure is counted in the run summary. A sweep never raises.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List

from sqlalchemy.exc import SQLAlchemyError

from backend.src.models import EventStatus, TicketStatus
from backend.src.services.exceptions import REDUNDANT_TRANSITION_ERRORS, ServiceError
from backend.src.services.job_retry import RetryPolicy, transition_with_retry
from backend.src.services.job_summary import JobSummary
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_rules import AggregateKind, Status
from backend.src.utils.logging_config import get_logger


logger = get_logger("jobs")

DEFAULT_NO_SHOW_GRACE = timedelta(hours=1)


class SweepService:
    """
    Start, end and no-show sweeps.

    Args:
        lifecycle: Facade used for every transition
        ledger: Store handle used to find candidates
        clock: Returns the current naive UTC time
        no_show_grace: Time after an event's scheduled end before no-shows are forfeited
        retry_policy: Retry policy for datastore failures
        sleep: Coroutine function awaited between retries
    """

    def __init__(
        self,
        lifecycle: LifecycleService,
        ledger: StatusLedger,
        clock: Callable[[], datetime] = datetime.utcnow,
        no_show_grace: timedelta = DEFAULT_NO_SHOW_GRACE,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.clock = clock
        self.no_show_grace = no_show_grace
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def start_sweep(self) -> JobSummary:
        """Move PUBLISHED events whose start has passed to LIVE."""
        summary = JobSummary(job="start_sweep")
        try:
            candidates = [e.guid for e in self.ledger.find_events_to_start(self.clock())]
        except SQLAlchemyError as e:
            return self._query_failed(summary, e)

        return await self._run(
            summary, AggregateKind.EVENT, candidates, EventStatus.LIVE,
            "Automatic transition: scheduled start time reached"
        )

    async def end_sweep(self) -> JobSummary:
        """Move LIVE events whose end has passed to ENDED."""
        summary = JobSummary(job="end_sweep")
        try:
            candidates = [e.guid for e in self.ledger.find_events_to_end(self.clock())]
        except SQLAlchemyError as e:
            return self._query_failed(summary, e)

        return await self._run(
            summary, AggregateKind.EVENT, candidates, EventStatus.ENDED,
            "Automatic transition: scheduled end time reached"
        )

    async def no_show_sweep(self) -> JobSummary:
        """Forfeit STAKED tickets whose event ended more than the grace period ago."""
        summary = JobSummary(job="no_show_sweep")
        try:
            tickets = self.ledger.find_forfeitable_tickets(self.clock(), self.no_show_grace)
            candidates = [t.guid for t in tickets]
        except SQLAlchemyError as e:
            return self._query_failed(summary, e)

        return await self._run(
            summary, AggregateKind.TICKET, candidates, TicketStatus.FORFEITED,
            "Automatic forfeiture: No check-in after event ended"
        )

    async def _run(
        self,
        summary: JobSummary,
        kind: AggregateKind,
        candidates: List[str],
        target: Status,
        reason: str,
    ) -> JobSummary:
        summary.found = len(candidates)

        for guid in candidates:
            try:
                await transition_with_retry(
                    self.lifecycle, kind, guid, target,
                    TransitionContext.system(reason=reason, source=summary.job),
                    self.retry_policy, self._sleep, summary.job,
                )
                summary.succeeded += 1
            except REDUNDANT_TRANSITION_ERRORS as e:
                logger.info(f"{summary.job}: {kind.value} {guid} already handled ({e.code})")
                summary.skipped += 1
            except ServiceError as e:
                logger.error(f"{summary.job}: failed to transition {kind.value} {guid}: {e}")
                summary.record_failure(f"{guid}: {e}")

        if summary.found:
            logger.info(
                f"{summary.job}: {summary.succeeded} transitioned, "
                f"{summary.skipped} skipped, {summary.failed} failed",
                extra={"job": summary.job, "found": summary.found}
            )
        return summary

    def _query_failed(self, summary: JobSummary, error: SQLAlchemyError) -> JobSummary:
        self.ledger.db.rollback()
        logger.error(f"{summary.job}: candidate query failed: {error}")
        summary.record_failure(f"query failed: {error}")
        return summary
