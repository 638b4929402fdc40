"""
Exact-time scheduler for lifecycle transitions.

schedule_at() persists a timer row and arms an asyncio task that sleeps
until the row's fire_at, then claims the row, re-checks that the aggregate
is still in the expected prior status and transitions it through
LifecycleService with triggered_by=system. An instant that has already
passed is handled immediately (catch-up) without a timer row.

Timer rows survive restarts: resume_pending() re-arms every SCHEDULED row
and every FIRING row left behind by a crash. Claims are conditional updates
on the row's claim token, so a row is fired at most once even when two
processes resume it, and a stale wake (aggregate already moved on) is
logged and skipped rather than retried.

Follow-ups are chained through domain events (see register()):
    event_published -> schedule published->live at scheduled start
    event_started   -> schedule live->ended at scheduled end
    event_ended     -> schedule the no-show forfeiture after the grace delay
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from backend.src.models import (
    EventStatus,
    TicketStatus,
    ScheduledTransition,
    TimerAction,
    TimerStatus,
)
from backend.src.services.domain_events import DomainEvent, DomainEventBus, DomainEventType
from backend.src.services.exceptions import (
    REDUNDANT_TRANSITION_ERRORS,
    ServiceError,
)
from backend.src.services.job_summary import JobSummary
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_rules import AggregateKind, Status, parse_status
from backend.src.utils.logging_config import get_logger


logger = get_logger("scheduler")

# Delay between an event ending and the scheduled no-show forfeiture
DEFAULT_NO_SHOW_DELAY = timedelta(minutes=30)

NO_SHOW_REASON = "Automatic forfeiture: No check-in after event ended"


class ExactTimeScheduler:
    """
    Durable sleep-until scheduler.

    Args:
        lifecycle: Facade used for every transition
        ledger: Store handle (timer rows share its session)
        clock: Returns the current naive UTC time
        sleep: Coroutine function used to wait, ``asyncio.sleep`` by default
        no_show_delay: Delay between event end and the no-show forfeiture
    """

    def __init__(
        self,
        lifecycle: LifecycleService,
        ledger: StatusLedger,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        no_show_delay: timedelta = DEFAULT_NO_SHOW_DELAY,
    ):
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.db = ledger.db
        self.clock = clock
        self._sleep = sleep
        self.no_show_delay = no_show_delay
        self._tasks: Dict[int, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_at(
        self,
        kind: Union[AggregateKind, str],
        aggregate_id: str,
        target: Union[Status, str],
        when: datetime,
        expected_prior: Union[Status, str],
    ) -> Optional[ScheduledTransition]:
        """
        Transition ``aggregate_id`` to ``target`` at ``when``.

        Returns the timer row, or None when ``when`` had already passed and
        the transition was attempted immediately.

        Raises:
            NotFoundError: If the aggregate doesn't exist
        """
        kind = AggregateKind(kind)
        target = parse_status(kind, target)
        expected_prior = parse_status(kind, expected_prior)
        row_id = self.ledger.resolve_id(kind, aggregate_id)

        if when <= self.clock():
            logger.info(
                f"Catch-up: {kind.value} {aggregate_id} -> {target.value} "
                f"was due at {when.isoformat()}"
            )
            self._run_transition(kind, row_id, target, expected_prior.value)
            return None

        timer = self._persist_timer(
            TimerAction.TRANSITION, kind, row_id, target.value, expected_prior.value, when
        )
        self._arm(timer)
        return timer

    def schedule_no_show_sweep(self, event_id: str, when: datetime) -> Optional[ScheduledTransition]:
        """
        Forfeit every STAKED ticket of an event at ``when``.

        Runs immediately when ``when`` has already passed.
        """
        row_id = self.ledger.resolve_id(AggregateKind.EVENT, event_id)

        if when <= self.clock():
            logger.info(f"Catch-up: no-show forfeiture for event {event_id} was due at {when.isoformat()}")
            self._forfeit_no_shows(row_id)
            return None

        timer = self._persist_timer(
            TimerAction.FORFEIT_NO_SHOWS, AggregateKind.EVENT, row_id, "", None, when
        )
        self._arm(timer)
        return timer

    def _persist_timer(
        self,
        action: TimerAction,
        kind: AggregateKind,
        row_id: int,
        target: str,
        expected_prior: Optional[str],
        when: datetime,
    ) -> ScheduledTransition:
        existing = self.db.query(ScheduledTransition).filter(
            ScheduledTransition.action == action,
            ScheduledTransition.aggregate_kind == kind.value,
            ScheduledTransition.aggregate_id == row_id,
            ScheduledTransition.target_status == target,
            ScheduledTransition.fire_at == when,
        ).first()
        if existing is not None:
            logger.debug(f"Timer {existing.guid} already scheduled for this request")
            return existing

        timer = ScheduledTransition(
            action=action,
            aggregate_kind=kind.value,
            aggregate_id=row_id,
            target_status=target,
            expected_prior_status=expected_prior,
            fire_at=when,
            status=TimerStatus.SCHEDULED,
        )
        self.db.add(timer)
        self.db.commit()

        logger.info(
            f"Scheduled {action.value} for {kind.value} {row_id} "
            f"-> {target or '-'} at {when.isoformat()} ({timer.guid})"
        )
        return timer

    # ------------------------------------------------------------------
    # Wakes
    # ------------------------------------------------------------------

    def _arm(self, timer: ScheduledTransition) -> None:
        if timer.status not in (TimerStatus.SCHEDULED, TimerStatus.FIRING):
            return
        timer_id = timer.id
        if timer_id in self._tasks:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.info(f"No running asyncio loop, timer {timer.guid} left for resume_pending()")
            return

        task = loop.create_task(self._wake(timer_id))
        self._tasks[timer_id] = task
        task.add_done_callback(lambda _t, key=timer_id: self._tasks.pop(key, None))

    async def _wake(self, timer_id: int) -> None:
        try:
            while True:
                fire_at = self.db.query(ScheduledTransition.fire_at).filter(
                    ScheduledTransition.id == timer_id
                ).scalar()
                if fire_at is None:
                    return
                remaining = (fire_at - self.clock()).total_seconds()
                if remaining <= 0:
                    break
                await self._sleep(remaining)

            self.fire(timer_id)
        except asyncio.CancelledError:
            logger.debug(f"Wake for timer {timer_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Wake for timer {timer_id} failed: {e}", exc_info=True)

    def fire(self, timer_id: int) -> Optional[TimerStatus]:
        """
        Claim and execute one timer row.

        Returns the row's final status, or None when the row was not
        claimable (already fired elsewhere, or missing).
        """
        if not self._claim(timer_id):
            logger.info(f"Timer {timer_id} already claimed or finished, skipping")
            return None

        timer = (
            self.db.query(ScheduledTransition)
            .populate_existing()
            .filter(ScheduledTransition.id == timer_id)
            .one()
        )
        kind = AggregateKind(timer.aggregate_kind)

        if timer.action == TimerAction.FORFEIT_NO_SHOWS:
            summary = self._forfeit_no_shows(timer.aggregate_id)
            outcome = TimerStatus.FAILED if summary.failed else TimerStatus.COMPLETED
            error = "; ".join(summary.errors) or None
        else:
            target = parse_status(kind, timer.target_status)
            outcome, error = self._run_transition(
                kind, timer.aggregate_id, target, timer.expected_prior_status
            )

        self._finish(timer_id, outcome, error)
        return outcome

    def _claim(self, timer_id: int) -> bool:
        try:
            current = self.db.query(
                ScheduledTransition.status, ScheduledTransition.claim_token
            ).filter(ScheduledTransition.id == timer_id).first()
            if current is None or current.status not in (TimerStatus.SCHEDULED, TimerStatus.FIRING):
                return False

            if current.claim_token is None:
                token_match = ScheduledTransition.claim_token.is_(None)
            else:
                token_match = ScheduledTransition.claim_token == current.claim_token

            claimed = self.db.query(ScheduledTransition).filter(
                ScheduledTransition.id == timer_id,
                ScheduledTransition.status.in_([TimerStatus.SCHEDULED, TimerStatus.FIRING]),
                token_match,
            ).update(
                {
                    ScheduledTransition.status: TimerStatus.FIRING,
                    ScheduledTransition.claim_token: uuid.uuid4().hex,
                    ScheduledTransition.attempts: ScheduledTransition.attempts + 1,
                },
                synchronize_session=False
            )
            self.db.commit()
            return claimed == 1
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to claim timer {timer_id}: {e}")
            return False

    def _finish(self, timer_id: int, outcome: TimerStatus, error: Optional[str]) -> None:
        try:
            self.db.query(ScheduledTransition).filter(
                ScheduledTransition.id == timer_id
            ).update(
                {
                    ScheduledTransition.status: outcome,
                    ScheduledTransition.fired_at: self.clock(),
                    ScheduledTransition.last_error: error,
                },
                synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record outcome of timer {timer_id}: {e}")

    def _run_transition(
        self,
        kind: AggregateKind,
        row_id: int,
        target: Status,
        expected_prior: Optional[str],
    ):
        """Re-validate and apply one scheduled transition. Returns (outcome, error)."""
        row = self.ledger.get(kind, row_id)
        if row is None:
            logger.warning(f"Scheduled {kind.value} {row_id} no longer exists")
            return TimerStatus.FAILED, f"{kind.value} {row_id} not found"

        guid = row.guid
        if expected_prior is not None and row.status.value != expected_prior:
            logger.info(
                f"Stale wake for {kind.value} {guid}: expected '{expected_prior}', "
                f"found '{row.status.value}', skipping {target.value}"
            )
            return TimerStatus.SKIPPED, None

        # The window may have moved since the timer was written (unpublish, then
        # republish with a later start); a newer timer covers the new instant
        due_at = self._scheduled_instant(kind, row, target)
        if due_at is not None and due_at > self.clock():
            logger.info(
                f"Stale wake for {kind.value} {guid}: {target.value} is now scheduled "
                f"for {due_at.isoformat()}, skipping"
            )
            return TimerStatus.SKIPPED, None

        try:
            self.lifecycle.transition(
                kind, guid, target,
                TransitionContext.system(reason="Scheduled transition", source="scheduler"),
            )
            return TimerStatus.COMPLETED, None
        except REDUNDANT_TRANSITION_ERRORS as e:
            logger.info(f"Scheduled transition for {kind.value} {guid} already handled: {e}")
            return TimerStatus.SKIPPED, None
        except ServiceError as e:
            logger.error(f"Scheduled transition for {kind.value} {guid} failed: {e}")
            return TimerStatus.FAILED, str(e)

    @staticmethod
    def _scheduled_instant(kind: AggregateKind, row, target: Status) -> Optional[datetime]:
        """The aggregate's current scheduled instant for a time-driven target."""
        if kind != AggregateKind.EVENT:
            return None
        if target == EventStatus.LIVE:
            return row.scheduled_start_at
        if target == EventStatus.ENDED:
            return row.scheduled_end_at
        return None

    def _forfeit_no_shows(self, event_row_id: int) -> JobSummary:
        summary = JobSummary(job="scheduled_no_show")
        tickets = [(t.id, t.guid) for t in self.ledger.find_staked_tickets(event_row_id)]
        summary.found = len(tickets)

        for _ticket_id, ticket_guid in tickets:
            try:
                self.lifecycle.transition(
                    AggregateKind.TICKET, ticket_guid, TicketStatus.FORFEITED,
                    TransitionContext.system(reason=NO_SHOW_REASON, source="scheduler"),
                )
                summary.succeeded += 1
            except REDUNDANT_TRANSITION_ERRORS:
                summary.skipped += 1
            except ServiceError as e:
                summary.record_failure(f"{ticket_guid}: {e}")

        logger.info(
            f"No-show forfeiture for event {event_row_id}: "
            f"{summary.succeeded} forfeited, {summary.skipped} skipped, {summary.failed} failed"
        )
        return summary

    # ------------------------------------------------------------------
    # Restart handling
    # ------------------------------------------------------------------

    def pending_timers(self):
        return (
            self.db.query(ScheduledTransition)
            .filter(ScheduledTransition.status.in_([TimerStatus.SCHEDULED, TimerStatus.FIRING]))
            .order_by(ScheduledTransition.fire_at, ScheduledTransition.id)
            .all()
        )

    def resume_pending(self) -> int:
        """
        Re-arm every SCHEDULED or FIRING timer row.

        Must be called from a running event loop. Returns the number of
        timers armed.
        """
        timers = self.pending_timers()
        for timer in timers:
            self._arm(timer)
        if timers:
            logger.info(f"Resumed {len(timers)} pending timer(s)")
        return len(timers)

    def fire_due(self) -> JobSummary:
        """Fire every pending timer whose instant has passed, without sleeping."""
        summary = JobSummary(job="resume_timers")
        now = self.clock()
        due = [
            timer.id for timer in self.db.query(ScheduledTransition).filter(
                ScheduledTransition.status.in_([TimerStatus.SCHEDULED, TimerStatus.FIRING]),
                ScheduledTransition.fire_at <= now,
            ).order_by(ScheduledTransition.fire_at, ScheduledTransition.id).all()
        ]
        summary.found = len(due)

        for timer_id in due:
            outcome = self.fire(timer_id)
            if outcome == TimerStatus.COMPLETED:
                summary.succeeded += 1
            elif outcome == TimerStatus.FAILED:
                summary.record_failure(f"timer {timer_id} failed")
            else:
                summary.skipped += 1
        return summary

    async def wait_idle(self) -> None:
        """Wait until every armed wake (including ones armed while waiting) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel armed wakes; their rows stay SCHEDULED for the next resume."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def armed_count(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Follow-up chaining
    # ------------------------------------------------------------------

    def register(self, bus: DomainEventBus) -> None:
        """Subscribe the follow-up schedulers to the domain event bus."""
        bus.subscribe(DomainEventType.EVENT_PUBLISHED, self.on_event_published)
        bus.subscribe(DomainEventType.EVENT_STARTED, self.on_event_started)
        bus.subscribe(DomainEventType.EVENT_ENDED, self.on_event_ended)

    def on_event_published(self, event: DomainEvent) -> None:
        row = self.ledger.get(AggregateKind.EVENT, event.row_id)
        if row is None or row.scheduled_start_at is None:
            return
        self.schedule_at(
            AggregateKind.EVENT, event.aggregate_id, EventStatus.LIVE,
            row.scheduled_start_at, EventStatus.PUBLISHED,
        )

    def on_event_started(self, event: DomainEvent) -> None:
        row = self.ledger.get(AggregateKind.EVENT, event.row_id)
        if row is None or row.scheduled_end_at is None:
            logger.warning(f"Event {event.aggregate_id} went live without a scheduled end")
            return
        self.schedule_at(
            AggregateKind.EVENT, event.aggregate_id, EventStatus.ENDED,
            row.scheduled_end_at, EventStatus.LIVE,
        )

    def on_event_ended(self, event: DomainEvent) -> None:
        self.schedule_no_show_sweep(event.aggregate_id, event.occurred_at + self.no_show_delay)
