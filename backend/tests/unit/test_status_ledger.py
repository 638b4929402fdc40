"""
Unit tests for StatusLedger.

Tests cover:
- GUID resolution
- Conditional status writes
- Audit history
- Sweep and settlement candidate queries
"""

from datetime import timedelta

import pytest

from backend.src.models import EventStatus, TicketStatus
from backend.src.services.exceptions import NotFoundError
from backend.src.services.guid import GuidService
from backend.src.services.transition_rules import AggregateKind


class TestIdentity:

    def test_resolve_id(self, ledger, sample_event):
        event = sample_event()
        assert ledger.resolve_id(AggregateKind.EVENT, event.guid) == event.id

    def test_resolve_id_accepts_uppercase_guid(self, ledger, sample_event):
        event = sample_event()
        assert ledger.resolve_id(AggregateKind.EVENT, event.guid.upper()) == event.id

    def test_resolve_id_unknown(self, ledger):
        with pytest.raises(NotFoundError) as exc_info:
            ledger.resolve_id(AggregateKind.EVENT, GuidService.generate_guid("evt"))
        assert exc_info.value.resource == "Event"

    def test_resolve_id_malformed(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.resolve_id(AggregateKind.TICKET, "tkt_nope")

    def test_kind_for_guid(self, ledger, sample_event, sample_ticket):
        event = sample_event()
        ticket = sample_ticket(event)
        assert ledger.kind_for_guid(event.guid) == AggregateKind.EVENT
        assert ledger.kind_for_guid(ticket.guid) == AggregateKind.TICKET

    def test_kind_for_non_aggregate_guid(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.kind_for_guid(GuidService.generate_guid("stx"))

    def test_get_status_missing(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.get_status(AggregateKind.TICKET, 12345)


class TestCompareAndSet:

    def test_applies_when_status_matches(self, ledger, sample_event, clock):
        event = sample_event()
        applied = ledger.compare_and_set_status(
            AggregateKind.EVENT, event.id, EventStatus.DRAFT, EventStatus.PUBLISHED, clock(),
            {"scheduled_start_at": clock()},
        )
        ledger.db.commit()

        assert applied
        row = ledger.get(AggregateKind.EVENT, event.id)
        assert row.status == EventStatus.PUBLISHED
        assert row.previous_status == "draft"
        assert row.scheduled_start_at == clock()
        assert row.updated_at == clock()

    def test_noop_when_status_moved(self, ledger, sample_event, clock):
        event = sample_event(status=EventStatus.PUBLISHED)
        applied = ledger.compare_and_set_status(
            AggregateKind.EVENT, event.id, EventStatus.DRAFT, EventStatus.PUBLISHED, clock()
        )
        assert not applied
        assert ledger.get_status(AggregateKind.EVENT, event.id) == EventStatus.PUBLISHED


class TestHistory:

    def test_history_is_ordered(self, ledger, sample_event, clock):
        event = sample_event()
        ledger.append_audit(
            AggregateKind.EVENT, event.id, EventStatus.PUBLISHED, EventStatus.LIVE,
            "system", None, None, clock() + timedelta(hours=1),
        )
        ledger.append_audit(
            AggregateKind.EVENT, event.id, EventStatus.DRAFT, EventStatus.PUBLISHED,
            "user:1", "go", {"k": "v"}, clock(),
        )
        ledger.db.commit()

        history = ledger.history(AggregateKind.EVENT, event.id)
        assert [r.to_status for r in history] == ["published", "live"]
        assert history[0].metadata_json == {"k": "v"}
        assert history[1].metadata_json == {}

    def test_last_transition_at(self, ledger, sample_event, clock):
        event = sample_event()
        ended_at = clock() + timedelta(hours=3)
        ledger.append_audit(
            AggregateKind.EVENT, event.id, EventStatus.LIVE, EventStatus.ENDED,
            "system", None, None, ended_at,
        )
        ledger.db.commit()

        assert ledger.last_transition_at(AggregateKind.EVENT, event.id, EventStatus.ENDED) == ended_at
        assert ledger.last_transition_at(AggregateKind.EVENT, event.id, EventStatus.LIVE) is None


class TestSweepQueries:

    def test_events_to_start(self, ledger, sample_event, clock):
        due = sample_event(status=EventStatus.PUBLISHED, scheduled_start_at=clock() - timedelta(minutes=1))
        sample_event(status=EventStatus.PUBLISHED, scheduled_start_at=clock() + timedelta(minutes=1))
        sample_event(status=EventStatus.DRAFT, scheduled_start_at=clock() - timedelta(hours=1))

        assert [e.id for e in ledger.find_events_to_start(clock())] == [due.id]

    def test_events_to_end(self, ledger, sample_event, clock):
        due = sample_event(status=EventStatus.LIVE, scheduled_end_at=clock())
        sample_event(status=EventStatus.LIVE, scheduled_end_at=clock() + timedelta(minutes=5))
        sample_event(status=EventStatus.LIVE)

        assert [e.id for e in ledger.find_events_to_end(clock())] == [due.id]

    def test_forfeitable_tickets_respect_grace(self, ledger, sample_event, sample_ticket, clock):
        long_over = sample_event(status=EventStatus.ENDED, scheduled_end_at=clock() - timedelta(hours=2))
        just_over = sample_event(status=EventStatus.ENDED, scheduled_end_at=clock() - timedelta(minutes=30))
        missed_end = sample_event(status=EventStatus.LIVE, scheduled_end_at=clock() - timedelta(hours=2))

        due = sample_ticket(long_over, status=TicketStatus.STAKED)
        sample_ticket(long_over, status=TicketStatus.ISSUED)
        sample_ticket(just_over, status=TicketStatus.STAKED)
        caught_up = sample_ticket(missed_end, status=TicketStatus.STAKED)

        found = ledger.find_forfeitable_tickets(clock(), timedelta(hours=1))
        assert [t.id for t in found] == [due.id, caught_up.id]

    def test_unsettled_tickets(self, ledger, sample_event, sample_ticket):
        event = sample_event(status=EventStatus.ENDED)
        unsettled = sample_ticket(event, status=TicketStatus.FORFEITED, stake_tx_hash="0x1")
        sample_ticket(event, status=TicketStatus.CHECKED_IN, stake_tx_hash="0x2", escrow_tx_hash="0xdone")
        sample_ticket(event, status=TicketStatus.CHECKED_IN)
        sample_ticket(event, status=TicketStatus.STAKED)

        assert [t.id for t in ledger.find_unsettled_tickets(10)] == [unsettled.id]

    def test_record_escrow_settlement(self, ledger, sample_event, sample_ticket, clock):
        event = sample_event(status=EventStatus.ENDED)
        ticket = sample_ticket(event, status=TicketStatus.FORFEITED, stake_tx_hash="0x1")

        ledger.record_escrow_settlement(ticket.id, "0xsettled", clock())

        row = ledger.get(AggregateKind.TICKET, ticket.id)
        assert row.escrow_tx_hash == "0xsettled"
        assert row.escrow_settled_at == clock()
