"""
Transition rule table for Event and Ticket aggregates.

The legal edges are held in one table per aggregate kind, indexed by the
status enum. A transition (from, to) is legal iff ``to in TABLE[from]``;
terminal statuses map to the empty set. Every status of the enum must have
an entry, which ``_check_exhaustive`` enforces at import time.
"""

import enum
from typing import Dict, FrozenSet, List, Type, Union

from backend.src.models.event import EventStatus
from backend.src.models.ticket import TicketStatus


class AggregateKind(str, enum.Enum):
    """The two lifecycle aggregates."""
    EVENT = "event"
    TICKET = "ticket"


Status = Union[EventStatus, TicketStatus]


EVENT_TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.DRAFT: frozenset({EventStatus.PUBLISHED}),
    EventStatus.PUBLISHED: frozenset({
        EventStatus.LIVE,
        EventStatus.DRAFT,
        EventStatus.ARCHIVED,
    }),
    EventStatus.LIVE: frozenset({EventStatus.ENDED}),
    EventStatus.ENDED: frozenset({EventStatus.ARCHIVED}),
    EventStatus.ARCHIVED: frozenset(),
}

TICKET_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.PENDING: frozenset({
        TicketStatus.PENDING_APPROVAL,
        TicketStatus.ISSUED,
    }),
    TicketStatus.PENDING_APPROVAL: frozenset({
        TicketStatus.APPROVED,
        TicketStatus.REJECTED,
    }),
    TicketStatus.APPROVED: frozenset({
        TicketStatus.STAKED,
        TicketStatus.ISSUED,
        TicketStatus.REVOKED,
    }),
    TicketStatus.ISSUED: frozenset({
        TicketStatus.CHECKED_IN,
        TicketStatus.REVOKED,
    }),
    TicketStatus.STAKED: frozenset({
        TicketStatus.CHECKED_IN,
        TicketStatus.REFUNDED,
        TicketStatus.FORFEITED,
    }),
    TicketStatus.REJECTED: frozenset(),
    TicketStatus.CHECKED_IN: frozenset(),
    TicketStatus.REFUNDED: frozenset(),
    TicketStatus.FORFEITED: frozenset(),
    TicketStatus.REVOKED: frozenset(),
}

TRANSITION_TABLES = {
    AggregateKind.EVENT: EVENT_TRANSITIONS,
    AggregateKind.TICKET: TICKET_TRANSITIONS,
}

STATUS_ENUMS: Dict[AggregateKind, Type[enum.Enum]] = {
    AggregateKind.EVENT: EventStatus,
    AggregateKind.TICKET: TicketStatus,
}

STATUS_DESCRIPTIONS: Dict[Status, str] = {
    EventStatus.DRAFT: "Event is being created and is not visible to guests",
    EventStatus.PUBLISHED: "Event is published and accepting registrations",
    EventStatus.LIVE: "Event is currently happening",
    EventStatus.ENDED: "Event has ended",
    EventStatus.ARCHIVED: "Event is archived and read-only",
    TicketStatus.PENDING: "Registration received, awaiting processing",
    TicketStatus.PENDING_APPROVAL: "Registration is waiting for organizer approval",
    TicketStatus.APPROVED: "Registration approved by the organizer",
    TicketStatus.REJECTED: "Registration rejected by the organizer",
    TicketStatus.ISSUED: "Ticket issued, guest can check in",
    TicketStatus.STAKED: "Stake deposited, guest can check in",
    TicketStatus.CHECKED_IN: "Guest checked in at the event",
    TicketStatus.REFUNDED: "Stake refunded to the guest",
    TicketStatus.FORFEITED: "Stake forfeited for not attending",
    TicketStatus.REVOKED: "Ticket revoked by the organizer",
}


def _check_exhaustive() -> None:
    for kind, table in TRANSITION_TABLES.items():
        status_enum = STATUS_ENUMS[kind]
        missing = set(status_enum) - set(table)
        if missing:
            raise RuntimeError(
                f"Transition table for {kind.value} is missing statuses: "
                f"{sorted(s.value for s in missing)}"
            )
        for source, targets in table.items():
            foreign = [t for t in targets if not isinstance(t, status_enum)]
            if foreign:
                raise RuntimeError(
                    f"Transition table for {kind.value} maps {source.value} "
                    f"to foreign statuses {foreign}"
                )


_check_exhaustive()


def parse_status(kind: AggregateKind, value: Union[str, Status]) -> Status:
    """
    Coerce a status value to the enum of the given aggregate kind.

    Raises:
        ValueError: If the value is not a status of that kind
    """
    status_enum = STATUS_ENUMS[kind]
    if isinstance(value, status_enum):
        return value
    if isinstance(value, enum.Enum):
        value = value.value
    return status_enum(value)


def valid_next_statuses(kind: AggregateKind, current: Status) -> List[Status]:
    """Legal targets from ``current``, in enum declaration order."""
    targets = TRANSITION_TABLES[kind][current]
    return [s for s in STATUS_ENUMS[kind] if s in targets]


def is_valid_transition(kind: AggregateKind, current: Status, target: Status) -> bool:
    return target in TRANSITION_TABLES[kind].get(current, frozenset())


def is_terminal(kind: AggregateKind, status: Status) -> bool:
    return not TRANSITION_TABLES[kind][status]


def edge_key(current: Status, target: Status) -> str:
    """Edge name used by the guard registry, e.g. ``"staked->forfeited"``."""
    return f"{current.value}->{target.value}"


def describe_status(status: Status) -> str:
    return STATUS_DESCRIPTIONS.get(status, status.value)


def iter_edges(kind: AggregateKind):
    """Yield every declared (from, to) edge of an aggregate kind."""
    for source, targets in TRANSITION_TABLES[kind].items():
        for target in sorted(targets, key=lambda s: s.value):
            yield source, target
