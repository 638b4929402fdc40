"""
Unit tests for ExactTimeScheduler.

Tests cover:
- Catch-up of instants already in the past
- Durable, idempotent timer rows
- Claiming and firing (once), stale wakes
- Armed wakes on a running loop, resume after restart, shutdown
- Follow-up chaining through domain events
"""

import asyncio
from datetime import timedelta

import pytest

from backend.src.models import (
    EventStatus,
    ScheduledTransition,
    TicketStatus,
    TimerAction,
    TimerStatus,
)
from backend.src.services.exceptions import NotFoundError
from backend.src.services.guid import GuidService
from backend.src.services.scheduler_service import ExactTimeScheduler
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_rules import AggregateKind


@pytest.fixture
def fake_sleep(clock):
    """Sleep that advances the fake clock instead of waiting."""
    calls = []

    async def _sleep(seconds):
        calls.append(seconds)
        clock.advance(seconds=seconds)
        await asyncio.sleep(0)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def scheduler(lifecycle, ledger, clock, fake_sleep):
    return ExactTimeScheduler(lifecycle, ledger, clock, fake_sleep, no_show_delay=timedelta(minutes=30))


@pytest.fixture
def published_event(sample_event, clock):
    return sample_event(
        status=EventStatus.PUBLISHED,
        scheduled_start_at=clock() + timedelta(hours=1),
        scheduled_end_at=clock() + timedelta(hours=3),
    )


def timers(session):
    return session.query(ScheduledTransition).order_by(ScheduledTransition.id).all()


class TestScheduling:

    def test_past_instant_runs_immediately(self, scheduler, ledger, published_event, clock, test_db_session):
        result = scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE,
            clock() - timedelta(minutes=5), EventStatus.PUBLISHED,
        )

        assert result is None
        assert ledger.get_status(AggregateKind.EVENT, published_event.id) == EventStatus.LIVE
        assert timers(test_db_session) == []

    def test_future_instant_persists_timer(self, scheduler, published_event, clock):
        when = clock() + timedelta(hours=1)

        timer = scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE, when, EventStatus.PUBLISHED,
        )

        assert timer.guid.startswith("tmr_")
        assert timer.status == TimerStatus.SCHEDULED
        assert timer.fire_at == when
        assert timer.target_status == "live"
        assert timer.expected_prior_status == "published"
        # No running loop in a synchronous test
        assert scheduler.armed_count == 0

    def test_scheduling_is_idempotent(self, scheduler, published_event, clock, test_db_session):
        when = clock() + timedelta(hours=1)
        first = scheduler.schedule_at("event", published_event.guid, "live", when, "published")
        second = scheduler.schedule_at("event", published_event.guid, "live", when, "published")

        assert first.id == second.id
        assert len(timers(test_db_session)) == 1

    def test_unknown_aggregate(self, scheduler, clock):
        with pytest.raises(NotFoundError):
            scheduler.schedule_at(
                AggregateKind.EVENT, GuidService.generate_guid("evt"), EventStatus.LIVE,
                clock() + timedelta(hours=1), EventStatus.PUBLISHED,
            )


class TestFiring:

    def test_fire_transitions_and_completes(self, scheduler, ledger, published_event, clock):
        timer = scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE,
            clock() + timedelta(hours=1), EventStatus.PUBLISHED,
        )
        timer_id = timer.id
        clock.advance(hours=1)

        assert scheduler.fire(timer_id) == TimerStatus.COMPLETED

        assert ledger.get_status(AggregateKind.EVENT, published_event.id) == EventStatus.LIVE
        [record] = ledger.history(AggregateKind.EVENT, published_event.id)
        assert record.triggered_by == "system"
        assert record.metadata_json["source"] == "scheduler"

        row = ledger.db.get(ScheduledTransition, timer_id, populate_existing=True)
        assert row.status == TimerStatus.COMPLETED
        assert row.attempts == 1
        assert row.fired_at == clock()

    def test_timer_fires_at_most_once(self, scheduler, published_event, clock):
        timer = scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE,
            clock() + timedelta(minutes=1), EventStatus.PUBLISHED,
        )
        timer_id = timer.id
        clock.advance(minutes=1)

        assert scheduler.fire(timer_id) == TimerStatus.COMPLETED
        assert scheduler.fire(timer_id) is None

    def test_stale_wake_is_skipped(self, scheduler, lifecycle, ledger, published_event, clock):
        timer = scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE,
            clock() + timedelta(hours=1), EventStatus.PUBLISHED,
        )
        timer_id = timer.id
        lifecycle.transition(AggregateKind.EVENT, published_event.guid, EventStatus.DRAFT)
        clock.advance(hours=1)

        assert scheduler.fire(timer_id) == TimerStatus.SKIPPED
        assert ledger.get_status(AggregateKind.EVENT, published_event.id) == EventStatus.DRAFT

    def test_wake_before_rescheduled_start_is_skipped(
        self, scheduler, lifecycle, bus, ledger, sample_event, clock, test_db_session
    ):
        scheduler.register(bus)
        event = sample_event()
        first_start = clock() + timedelta(hours=1)
        lifecycle.transition(
            AggregateKind.EVENT, event.guid, EventStatus.PUBLISHED,
            TransitionContext(scheduled_start_at=first_start, scheduled_end_at=first_start + timedelta(hours=2)),
        )
        lifecycle.transition(AggregateKind.EVENT, event.guid, EventStatus.DRAFT)
        new_start = clock() + timedelta(days=7)
        lifecycle.transition(
            AggregateKind.EVENT, event.guid, EventStatus.PUBLISHED,
            TransitionContext(scheduled_start_at=new_start, scheduled_end_at=new_start + timedelta(hours=2)),
        )
        old_timer, new_timer = timers(test_db_session)
        old_id, new_id = old_timer.id, new_timer.id
        assert old_timer.fire_at == first_start
        assert new_timer.fire_at == new_start

        clock.advance(hours=1)
        summary = scheduler.fire_due()

        assert summary.skipped == 1
        assert ledger.get_status(AggregateKind.EVENT, event.id) == EventStatus.PUBLISHED
        assert test_db_session.get(ScheduledTransition, old_id, populate_existing=True).status == TimerStatus.SKIPPED
        assert test_db_session.get(ScheduledTransition, new_id, populate_existing=True).status == TimerStatus.SCHEDULED

        clock.set(new_start)
        assert scheduler.fire(new_id) == TimerStatus.COMPLETED
        assert ledger.get_status(AggregateKind.EVENT, event.id) == EventStatus.LIVE

    def test_wake_before_rescheduled_end_is_skipped(self, scheduler, ledger, sample_event, clock, test_db_session):
        event = sample_event(
            status=EventStatus.LIVE,
            scheduled_start_at=clock() - timedelta(hours=1),
            scheduled_end_at=clock() + timedelta(hours=1),
        )
        timer = scheduler.schedule_at(
            AggregateKind.EVENT, event.guid, EventStatus.ENDED,
            clock() + timedelta(minutes=30), EventStatus.LIVE,
        )
        timer_id = timer.id
        clock.advance(minutes=30)

        assert scheduler.fire(timer_id) == TimerStatus.SKIPPED
        assert ledger.get_status(AggregateKind.EVENT, event.id) == EventStatus.LIVE

    def test_crashed_claim_is_reclaimed(self, scheduler, ledger, sample_event, clock, test_db_session):
        due = sample_event(status=EventStatus.PUBLISHED, scheduled_start_at=clock() - timedelta(minutes=1))
        crashed = ScheduledTransition(
            action=TimerAction.TRANSITION,
            aggregate_kind="event",
            aggregate_id=due.id,
            target_status="live",
            expected_prior_status="published",
            fire_at=clock() - timedelta(minutes=1),
            status=TimerStatus.FIRING,
            claim_token="crashed-worker",
            attempts=1,
        )
        test_db_session.add(crashed)
        test_db_session.commit()
        timer_id = crashed.id

        assert scheduler.fire(timer_id) == TimerStatus.COMPLETED
        row = test_db_session.get(ScheduledTransition, timer_id, populate_existing=True)
        assert row.attempts == 2
        assert row.claim_token != "crashed-worker"

    def test_guard_rejection_marks_timer_failed(self, scheduler, ledger, sample_event, sample_ticket, clock):
        event = sample_event(
            status=EventStatus.LIVE,
            scheduled_start_at=clock(),
            scheduled_end_at=clock() + timedelta(hours=5),
        )
        ticket = sample_ticket(event, status=TicketStatus.STAKED)
        timer = scheduler.schedule_at(
            AggregateKind.TICKET, ticket.guid, TicketStatus.FORFEITED,
            clock() + timedelta(hours=1), TicketStatus.STAKED,
        )
        timer_id = timer.id
        clock.advance(hours=1)

        assert scheduler.fire(timer_id) == TimerStatus.FAILED
        row = ledger.db.get(ScheduledTransition, timer_id, populate_existing=True)
        assert "Cannot forfeit until event has ended" in row.last_error

    def test_no_show_timer_forfeits_staked_tickets(self, scheduler, ledger, sample_event, sample_ticket, clock):
        event = sample_event(
            status=EventStatus.ENDED,
            scheduled_start_at=clock() - timedelta(hours=2),
            scheduled_end_at=clock(),
        )
        staked = [sample_ticket(event, status=TicketStatus.STAKED) for _ in range(2)]
        checked_in = sample_ticket(event, status=TicketStatus.CHECKED_IN)

        timer = scheduler.schedule_no_show_sweep(event.guid, clock() + timedelta(minutes=30))
        timer_id = timer.id
        assert timer.action == TimerAction.FORFEIT_NO_SHOWS
        clock.advance(minutes=30)

        assert scheduler.fire(timer_id) == TimerStatus.COMPLETED
        for ticket in staked:
            assert ledger.get_status(AggregateKind.TICKET, ticket.id) == TicketStatus.FORFEITED
        assert ledger.get_status(AggregateKind.TICKET, checked_in.id) == TicketStatus.CHECKED_IN

    def test_fire_due(self, scheduler, sample_event, clock):
        soon = sample_event(status=EventStatus.PUBLISHED, scheduled_start_at=clock() + timedelta(minutes=5))
        later = sample_event(status=EventStatus.PUBLISHED, scheduled_start_at=clock() + timedelta(hours=5))
        scheduler.schedule_at("event", soon.guid, "live", soon.scheduled_start_at, "published")
        scheduler.schedule_at("event", later.guid, "live", later.scheduled_start_at, "published")
        clock.advance(minutes=10)

        summary = scheduler.fire_due()

        assert summary.job == "resume_timers"
        assert summary.found == 1
        assert summary.succeeded == 1


class TestArmedWakes:

    @pytest.mark.asyncio
    async def test_armed_wake_sleeps_until_fire_at(self, scheduler, ledger, published_event, clock, fake_sleep):
        start = clock()
        scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE,
            start + timedelta(hours=1), EventStatus.PUBLISHED,
        )
        assert scheduler.armed_count == 1

        await scheduler.wait_idle()

        assert fake_sleep.calls == [3600.0]
        assert clock() == start + timedelta(hours=1)
        assert ledger.get_status(AggregateKind.EVENT, published_event.id) == EventStatus.LIVE
        assert scheduler.armed_count == 0

    @pytest.mark.asyncio
    async def test_resume_pending_after_restart(
        self, lifecycle, ledger, published_event, clock, fake_sleep, test_db_session
    ):
        test_db_session.add(ScheduledTransition(
            action=TimerAction.TRANSITION,
            aggregate_kind="event",
            aggregate_id=published_event.id,
            target_status="live",
            expected_prior_status="published",
            fire_at=published_event.scheduled_start_at,
            status=TimerStatus.SCHEDULED,
        ))
        test_db_session.commit()

        restarted = ExactTimeScheduler(lifecycle, ledger, clock, fake_sleep)
        assert restarted.resume_pending() == 1
        await restarted.wait_idle()

        assert ledger.get_status(AggregateKind.EVENT, published_event.id) == EventStatus.LIVE
        assert restarted.pending_timers() == []

    @pytest.mark.asyncio
    async def test_shutdown_leaves_timer_scheduled(self, lifecycle, ledger, published_event, clock, test_db_session):
        async def never_wakes(seconds):
            await asyncio.Event().wait()

        scheduler = ExactTimeScheduler(lifecycle, ledger, clock, never_wakes)
        timer = scheduler.schedule_at(
            AggregateKind.EVENT, published_event.guid, EventStatus.LIVE,
            clock() + timedelta(hours=1), EventStatus.PUBLISHED,
        )
        timer_id = timer.id
        await asyncio.sleep(0)

        await scheduler.shutdown()

        assert scheduler.armed_count == 0
        row = test_db_session.get(ScheduledTransition, timer_id, populate_existing=True)
        assert row.status == TimerStatus.SCHEDULED


class TestChaining:

    def test_publish_schedules_start(self, scheduler, lifecycle, bus, sample_event, clock, test_db_session):
        scheduler.register(bus)
        event = sample_event()
        start = clock() + timedelta(hours=1)

        lifecycle.transition(
            AggregateKind.EVENT, event.guid, EventStatus.PUBLISHED,
            TransitionContext.for_user("1", scheduled_start_at=start, scheduled_end_at=start + timedelta(hours=2)),
        )

        [timer] = timers(test_db_session)
        assert timer.target_status == "live"
        assert timer.fire_at == start

    def test_end_schedules_no_show_forfeiture(self, scheduler, lifecycle, bus, sample_event, clock, test_db_session):
        scheduler.register(bus)
        event = sample_event(
            status=EventStatus.LIVE,
            scheduled_start_at=clock() - timedelta(hours=2),
            scheduled_end_at=clock(),
        )

        lifecycle.transition(AggregateKind.EVENT, event.guid, EventStatus.ENDED)

        [timer] = timers(test_db_session)
        assert timer.action == TimerAction.FORFEIT_NO_SHOWS
        assert timer.fire_at == clock() + timedelta(minutes=30)
