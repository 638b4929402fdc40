"""
Status ledger: durable current status plus the append-only audit log.

The ledger is the only component that writes status columns, and it only
does so through compare_and_set_status(), a single conditional UPDATE keyed
on the previously read status. Status writes are never committed here; the
transition executor owns that transaction boundary.

Reads use populate_existing() so that an identity-mapped row loaded earlier
in the same session never hides a status written by another component.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backend.src.models import (
    Event,
    EventStatus,
    Ticket,
    TicketStatus,
    StatusTransition,
)
from backend.src.services.exceptions import NotFoundError
from backend.src.services.guid import GuidService
from backend.src.services.transition_rules import AggregateKind, Status


AGGREGATE_MODELS = {
    AggregateKind.EVENT: Event,
    AggregateKind.TICKET: Ticket,
}

# GUID prefix -> aggregate kind
AGGREGATE_PREFIXES = {
    Event.GUID_PREFIX: AggregateKind.EVENT,
    Ticket.GUID_PREFIX: AggregateKind.TICKET,
}


class StatusLedger:
    """
    Store handle for aggregate statuses and transition history.

    Usage:
        >>> ledger = StatusLedger(db_session)
        >>> ticket_id = ledger.resolve_id(AggregateKind.TICKET, "tkt_01hgw...")
        >>> ledger.get_status(AggregateKind.TICKET, ticket_id)
        <TicketStatus.STAKED: 'staked'>
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @staticmethod
    def kind_for_guid(guid: str) -> AggregateKind:
        """
        Infer the aggregate kind from a GUID prefix.

        Raises:
            NotFoundError: If the GUID is malformed or not an aggregate GUID
        """
        prefix = GuidService.get_prefix(guid)
        if prefix not in AGGREGATE_PREFIXES:
            raise NotFoundError("Aggregate", guid)
        return AGGREGATE_PREFIXES[prefix]

    def resolve_id(self, kind: AggregateKind, guid: str) -> int:
        """
        Resolve an external GUID to the internal row id.

        Raises:
            NotFoundError: If the GUID is malformed, has the wrong prefix,
                or no row exists
        """
        model = AGGREGATE_MODELS[kind]
        try:
            uuid_value = model.parse_guid(guid)
        except ValueError:
            raise NotFoundError(model.__name__, guid)

        row_id = self.db.query(model.id).filter(model.uuid == uuid_value).scalar()
        if row_id is None:
            raise NotFoundError(model.__name__, guid)
        return row_id

    def get(self, kind: AggregateKind, aggregate_id: int) -> Optional[Union[Event, Ticket]]:
        """Load a fresh copy of an aggregate row, or None."""
        model = AGGREGATE_MODELS[kind]
        return (
            self.db.query(model)
            .populate_existing()
            .filter(model.id == aggregate_id)
            .first()
        )

    def get_by_guid(self, kind: AggregateKind, guid: str) -> Union[Event, Ticket]:
        """Load an aggregate by GUID; raises NotFoundError."""
        row = self.get(kind, self.resolve_id(kind, guid))
        if row is None:
            raise NotFoundError(AGGREGATE_MODELS[kind].__name__, guid)
        return row

    def get_status(self, kind: AggregateKind, aggregate_id: int) -> Status:
        """
        Read the current status of an aggregate.

        Raises:
            NotFoundError: If the aggregate doesn't exist
        """
        model = AGGREGATE_MODELS[kind]
        status = (
            self.db.query(model.status)
            .filter(model.id == aggregate_id)
            .scalar()
        )
        if status is None:
            raise NotFoundError(model.__name__, aggregate_id)
        return status

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def compare_and_set_status(
        self,
        kind: AggregateKind,
        aggregate_id: int,
        expected: Status,
        target: Status,
        changed_at: datetime,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Set status to ``target`` iff it still equals ``expected``.

        Side fields are written by the same statement. Returns False when
        no row matched, which means another writer changed the status first.
        """
        model = AGGREGATE_MODELS[kind]
        values = {
            model.status: target,
            model.previous_status: expected.value,
            model.status_changed_at: changed_at,
            model.updated_at: changed_at,
        }
        for name, value in (fields or {}).items():
            values[getattr(model, name)] = value

        matched = (
            self.db.query(model)
            .filter(model.id == aggregate_id, model.status == expected)
            .update(values, synchronize_session=False)
        )
        return matched == 1

    def append_audit(
        self,
        kind: AggregateKind,
        aggregate_id: int,
        from_status: Status,
        to_status: Status,
        triggered_by: str,
        reason: Optional[str],
        metadata: Optional[Dict[str, Any]],
        transitioned_at: datetime,
    ) -> StatusTransition:
        """Append one immutable audit record (flushed, not committed)."""
        record = StatusTransition(
            aggregate_kind=kind.value,
            aggregate_id=aggregate_id,
            from_status=from_status.value,
            to_status=to_status.value,
            triggered_by=triggered_by,
            reason=reason,
            metadata_json=metadata or {},
            transitioned_at=transitioned_at,
        )
        self.db.add(record)
        self.db.flush()
        return record

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, kind: AggregateKind, aggregate_id: int) -> List[StatusTransition]:
        """All audit records for an aggregate, oldest first."""
        return (
            self.db.query(StatusTransition)
            .filter(
                StatusTransition.aggregate_kind == kind.value,
                StatusTransition.aggregate_id == aggregate_id,
            )
            .order_by(StatusTransition.transitioned_at, StatusTransition.id)
            .all()
        )

    def last_transition_at(
        self,
        kind: AggregateKind,
        aggregate_id: int,
        to_status: Status,
    ) -> Optional[datetime]:
        """When the aggregate most recently entered ``to_status``, per the audit log."""
        record = (
            self.db.query(StatusTransition.transitioned_at)
            .filter(
                StatusTransition.aggregate_kind == kind.value,
                StatusTransition.aggregate_id == aggregate_id,
                StatusTransition.to_status == to_status.value,
            )
            .order_by(StatusTransition.transitioned_at.desc(), StatusTransition.id.desc())
            .first()
        )
        return record[0] if record else None

    # ------------------------------------------------------------------
    # Sweep queries
    # ------------------------------------------------------------------

    def find_events_to_start(self, now: datetime) -> List[Event]:
        """Published events whose scheduled start is at or before ``now``."""
        return (
            self.db.query(Event)
            .populate_existing()
            .filter(
                Event.status == EventStatus.PUBLISHED,
                Event.scheduled_start_at.isnot(None),
                Event.scheduled_start_at <= now,
            )
            .order_by(Event.scheduled_start_at, Event.id)
            .all()
        )

    def find_events_to_end(self, now: datetime) -> List[Event]:
        """Live events whose scheduled end is at or before ``now``."""
        return (
            self.db.query(Event)
            .populate_existing()
            .filter(
                Event.status == EventStatus.LIVE,
                Event.scheduled_end_at.isnot(None),
                Event.scheduled_end_at <= now,
            )
            .order_by(Event.scheduled_end_at, Event.id)
            .all()
        )

    def find_staked_tickets(self, event_id: int) -> List[Ticket]:
        """Tickets of one event that are still STAKED."""
        return (
            self.db.query(Ticket)
            .populate_existing()
            .filter(
                Ticket.event_id == event_id,
                Ticket.status == TicketStatus.STAKED,
            )
            .order_by(Ticket.id)
            .all()
        )

    def find_forfeitable_tickets(self, now: datetime, grace: timedelta) -> List[Ticket]:
        """
        STAKED tickets whose event has ended and whose grace period has elapsed.

        An event counts as ended when its status is ENDED/ARCHIVED or its
        scheduled end is in the past. The grace period is measured from the
        scheduled end, so an event without one is never swept.
        """
        return (
            self.db.query(Ticket)
            .populate_existing()
            .join(Event, Ticket.event_id == Event.id)
            .filter(
                Ticket.status == TicketStatus.STAKED,
                or_(
                    Event.status.in_([EventStatus.ENDED, EventStatus.ARCHIVED]),
                    Event.scheduled_end_at < now,
                ),
                Event.scheduled_end_at.isnot(None),
                Event.scheduled_end_at < now - grace,
            )
            .order_by(Ticket.id)
            .all()
        )

    def find_unsettled_tickets(self, limit: int) -> List[Ticket]:
        """CHECKED_IN/FORFEITED tickets with stake metadata but no escrow settlement."""
        return (
            self.db.query(Ticket)
            .populate_existing()
            .filter(
                Ticket.status.in_([TicketStatus.CHECKED_IN, TicketStatus.FORFEITED]),
                or_(Ticket.stake_tx_hash.isnot(None), Ticket.stake_amount.isnot(None)),
                or_(Ticket.escrow_tx_hash.is_(None), Ticket.escrow_tx_hash == ""),
            )
            .order_by(Ticket.status_changed_at, Ticket.id)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Reconciliation sample
    # ------------------------------------------------------------------

    def recently_modified_events(self, limit: int) -> List[Event]:
        return (
            self.db.query(Event)
            .populate_existing()
            .order_by(Event.updated_at.desc(), Event.id.desc())
            .limit(limit)
            .all()
        )

    def recently_modified_tickets(self, limit: int) -> List[Ticket]:
        return (
            self.db.query(Ticket)
            .populate_existing()
            .order_by(Ticket.updated_at.desc(), Ticket.id.desc())
            .limit(limit)
            .all()
        )

    def record_escrow_settlement(self, ticket_id: int, tx_hash: str, settled_at: datetime) -> None:
        """Store the escrow transaction hash on a ticket and commit."""
        self.db.query(Ticket).filter(Ticket.id == ticket_id).update(
            {
                Ticket.escrow_tx_hash: tx_hash,
                Ticket.escrow_settled_at: settled_at,
            },
            synchronize_session=False
        )
        self.db.commit()
