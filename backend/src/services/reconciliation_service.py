"""
Reconciliation / drift repair.

Every run samples the most recently modified events and tickets, recomputes
the status each one should have from the clock and related-aggregate facts
(ignoring the stored status), and drives mismatches forward through
LifecycleService. Each repair is logged at WARNING as "Fixed drift".

Repairs are conservative:
- only forward along the rule table's edges, one declared edge at a time
  (a PUBLISHED event whose end has passed goes published->live->ended)
- never backwards: a stored status ahead of the expected one is left alone
- concurrent paths are tolerated; an edge someone else already applied is
  counted as skipped

A second run over the same sample with no new drift repairs nothing.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.src.models import Event, EventStatus, Ticket, TicketStatus
from backend.src.services.exceptions import REDUNDANT_TRANSITION_ERRORS, ServiceError
from backend.src.services.job_retry import RetryPolicy, transition_with_retry
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_rules import (
    AggregateKind,
    Status,
    is_valid_transition,
)
from backend.src.utils.logging_config import get_logger


logger = get_logger("jobs")

# Forward order of the time-driven event statuses
EVENT_TIMELINE = [EventStatus.PUBLISHED, EventStatus.LIVE, EventStatus.ENDED]

DEFAULT_SAMPLE_SIZE = 20
DEFAULT_NO_SHOW_GRACE = timedelta(hours=1)


@dataclass(frozen=True)
class DriftRepair:
    aggregate_kind: str
    aggregate_id: str
    from_status: str
    to_status: str


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation run."""
    examined: int = 0
    repairs: List[DriftRepair] = field(default_factory=list)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def repaired(self) -> int:
        return len(self.repairs)

    def to_dict(self):
        return {
            "job": "reconcile",
            "examined": self.examined,
            "repaired": self.repaired,
            "skipped": self.skipped,
            "failed": len(self.errors),
            "repairs": [
                f"{r.aggregate_kind} {r.aggregate_id}: {r.from_status} -> {r.to_status}"
                for r in self.repairs
            ],
            "errors": list(self.errors),
        }


class ReconciliationService:
    """
    Drift detection and forward-only repair.

    Args:
        lifecycle: Facade used for every repair
        ledger: Store handle used to sample aggregates and read audit history
        clock: Returns the current naive UTC time
        sample_size: Recently modified aggregates examined per kind and run
        no_show_grace: Grace after an event ends before staked tickets are forfeited
        retry_policy: Retry policy for datastore failures
        sleep: Coroutine function awaited between retries
    """

    def __init__(
        self,
        lifecycle: LifecycleService,
        ledger: StatusLedger,
        clock: Callable[[], datetime] = datetime.utcnow,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        no_show_grace: timedelta = DEFAULT_NO_SHOW_GRACE,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.clock = clock
        self.sample_size = sample_size
        self.no_show_grace = no_show_grace
        self.retry_policy = retry_policy
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Expected status
    # ------------------------------------------------------------------

    def expected_event_status(self, event: Event, now: datetime) -> EventStatus:
        """
        Status an event should have right now.

        Only the time-driven part of the lifecycle is derived; DRAFT and
        ARCHIVED are operator decisions and are returned unchanged, as is
        any status already past the one the clock implies.
        """
        current = event.status
        if current not in EVENT_TIMELINE:
            return current

        if event.scheduled_end_at is not None and event.scheduled_end_at <= now:
            implied = EventStatus.ENDED
        elif event.scheduled_start_at is not None and event.scheduled_start_at <= now:
            implied = EventStatus.LIVE
        else:
            implied = EventStatus.PUBLISHED

        if EVENT_TIMELINE.index(implied) > EVENT_TIMELINE.index(current):
            return implied
        return current

    def expected_ticket_status(self, ticket: Ticket, now: datetime) -> TicketStatus:
        """A STAKED ticket is expected FORFEITED once its event ended and the grace passed."""
        if ticket.status != TicketStatus.STAKED:
            return ticket.status

        ended_at = self._event_ended_at(ticket.event_id, now)
        if ended_at is not None and now - ended_at > self.no_show_grace:
            return TicketStatus.FORFEITED
        return ticket.status

    def _event_ended_at(self, event_id: int, now: datetime) -> Optional[datetime]:
        """When the event ended: the audit log's ENDED entry, else its past scheduled end."""
        event = self.ledger.get(AggregateKind.EVENT, event_id)
        if event is None:
            return None

        if event.status in (EventStatus.ENDED, EventStatus.ARCHIVED):
            recorded = self.ledger.last_transition_at(
                AggregateKind.EVENT, event_id, EventStatus.ENDED
            )
            if recorded is not None:
                return recorded
            return event.scheduled_end_at

        if event.scheduled_end_at is not None and event.scheduled_end_at < now:
            return event.scheduled_end_at
        return None

    @staticmethod
    def repair_path(kind: AggregateKind, current: Status, expected: Status) -> List[Status]:
        """
        Declared edges leading from ``current`` to ``expected``.

        Returns an empty list when no forward path exists.
        """
        if current == expected:
            return []

        if kind == AggregateKind.EVENT:
            if current not in EVENT_TIMELINE or expected not in EVENT_TIMELINE:
                return []
            start, stop = EVENT_TIMELINE.index(current), EVENT_TIMELINE.index(expected)
            if stop <= start:
                return []
            path = EVENT_TIMELINE[start + 1:stop + 1]
        else:
            path = [expected]

        previous = current
        for step in path:
            if not is_valid_transition(kind, previous, step):
                return []
            previous = step
        return path

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> ReconciliationReport:
        """Examine one bounded sample of each aggregate kind and repair drift."""
        report = ReconciliationReport()
        now = self.clock()

        try:
            events = [
                (e.guid, e.status, self.expected_event_status(e, now))
                for e in self.ledger.recently_modified_events(self.sample_size)
            ]
            tickets = [
                (t.guid, t.status, self.expected_ticket_status(t, now))
                for t in self.ledger.recently_modified_tickets(self.sample_size)
            ]
        except SQLAlchemyError as e:
            self.ledger.db.rollback()
            logger.error(f"Reconciliation sample query failed: {e}")
            report.errors.append(f"query failed: {e}")
            return report

        report.examined = len(events) + len(tickets)

        # Events first so ticket forfeiture sees repaired event statuses next run
        for guid, stored, expected in events:
            await self._repair(report, AggregateKind.EVENT, guid, stored, expected)
        for guid, stored, expected in tickets:
            await self._repair(report, AggregateKind.TICKET, guid, stored, expected)

        logger.info(
            f"Reconciliation examined {report.examined}, repaired {report.repaired}, "
            f"skipped {report.skipped}, failed {len(report.errors)}"
        )
        return report

    async def _repair(
        self,
        report: ReconciliationReport,
        kind: AggregateKind,
        guid: str,
        stored: Status,
        expected: Status,
    ) -> None:
        if stored == expected:
            return

        path = self.repair_path(kind, stored, expected)
        if not path:
            logger.warning(
                f"Drift on {kind.value} {guid} ({stored.value}, expected {expected.value}) "
                f"has no forward repair path"
            )
            return

        previous = stored
        for step in path:
            try:
                await transition_with_retry(
                    self.lifecycle, kind, guid, step,
                    TransitionContext.system(
                        reason="Reconciliation: fixed drift",
                        source="reconciliation",
                        expected_status=expected.value,
                    ),
                    self.retry_policy, self._sleep, "reconcile",
                )
            except REDUNDANT_TRANSITION_ERRORS as e:
                logger.info(f"Drift on {kind.value} {guid} already handled ({e.code})")
                report.skipped += 1
                return
            except ServiceError as e:
                logger.error(f"Failed to repair drift on {kind.value} {guid}: {e}")
                report.errors.append(f"{guid}: {e}")
                return

            logger.warning(
                f"Fixed drift: {kind.value} {guid} {previous.value} -> {step.value}",
                extra={
                    "aggregate_kind": kind.value,
                    "aggregate_id": guid,
                    "from_status": previous.value,
                    "to_status": step.value,
                }
            )
            report.repairs.append(DriftRepair(kind.value, guid, previous.value, step.value))
            previous = step
