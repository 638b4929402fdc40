"""
In-process domain event bus.

LifecycleService publishes one DomainEvent per committed transition.
Subscribers (the scheduler's follow-up chaining, notification fan-out) are
called synchronously in subscription order. A failing subscriber is logged
and skipped; it never affects the publisher or the other subscribers.

Delivery is at-least-once from the system's point of view: a lost event is
covered by the periodic sweeps and the reconciliation loop, so subscribers
must be idempotent.
"""

import enum
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.src.models import EventStatus, TicketStatus
from backend.src.services.transition_rules import AggregateKind, Status
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class DomainEventType(str, enum.Enum):
    """Domain event names emitted on successful transitions."""
    EVENT_PUBLISHED = "event_published"
    EVENT_UNPUBLISHED = "event_unpublished"
    EVENT_STARTED = "event_started"
    EVENT_ENDED = "event_ended"
    EVENT_ARCHIVED = "event_archived"
    TICKET_SUBMITTED_FOR_APPROVAL = "ticket_submitted_for_approval"
    TICKET_APPROVED = "ticket_approved"
    TICKET_REJECTED = "ticket_rejected"
    TICKET_ISSUED = "ticket_issued"
    TICKET_STAKED = "ticket_staked"
    TICKET_CHECKED_IN = "ticket_checked_in"
    TICKET_REFUNDED = "ticket_refunded"
    TICKET_FORFEITED = "ticket_forfeited"
    TICKET_REVOKED = "ticket_revoked"


# Event type by (kind, new status). Published -> draft is "unpublished".
_EVENT_TYPES: Dict[Tuple[AggregateKind, Status], DomainEventType] = {
    (AggregateKind.EVENT, EventStatus.PUBLISHED): DomainEventType.EVENT_PUBLISHED,
    (AggregateKind.EVENT, EventStatus.DRAFT): DomainEventType.EVENT_UNPUBLISHED,
    (AggregateKind.EVENT, EventStatus.LIVE): DomainEventType.EVENT_STARTED,
    (AggregateKind.EVENT, EventStatus.ENDED): DomainEventType.EVENT_ENDED,
    (AggregateKind.EVENT, EventStatus.ARCHIVED): DomainEventType.EVENT_ARCHIVED,
    (AggregateKind.TICKET, TicketStatus.PENDING_APPROVAL): DomainEventType.TICKET_SUBMITTED_FOR_APPROVAL,
    (AggregateKind.TICKET, TicketStatus.APPROVED): DomainEventType.TICKET_APPROVED,
    (AggregateKind.TICKET, TicketStatus.REJECTED): DomainEventType.TICKET_REJECTED,
    (AggregateKind.TICKET, TicketStatus.ISSUED): DomainEventType.TICKET_ISSUED,
    (AggregateKind.TICKET, TicketStatus.STAKED): DomainEventType.TICKET_STAKED,
    (AggregateKind.TICKET, TicketStatus.CHECKED_IN): DomainEventType.TICKET_CHECKED_IN,
    (AggregateKind.TICKET, TicketStatus.REFUNDED): DomainEventType.TICKET_REFUNDED,
    (AggregateKind.TICKET, TicketStatus.FORFEITED): DomainEventType.TICKET_FORFEITED,
    (AggregateKind.TICKET, TicketStatus.REVOKED): DomainEventType.TICKET_REVOKED,
}


def event_type_for(kind: AggregateKind, new_status: Status) -> Optional[DomainEventType]:
    return _EVENT_TYPES.get((kind, new_status))


@dataclass(frozen=True)
class DomainEvent:
    """A committed transition, as seen by asynchronous consumers."""
    type: DomainEventType
    aggregate_kind: AggregateKind
    aggregate_id: str
    row_id: int
    previous_status: Status
    new_status: Status
    occurred_at: datetime
    triggered_by: str
    payload: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[DomainEvent], None]


class DomainEventBus:
    """Synchronous publish/subscribe bus with per-subscriber failure isolation."""

    def __init__(self):
        self._subscribers: Dict[DomainEventType, List[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: DomainEventType, handler: Subscriber) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: DomainEventType, handler: Subscriber) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: DomainEvent) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of subscribers that handled the event without raising
        """
        delivered = 0
        for handler in list(self._subscribers.get(event.type, [])):
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Subscriber {getattr(handler, '__qualname__', handler)} failed "
                    f"for {event.type.value} on {event.aggregate_id}: {e}",
                    exc_info=True
                )
        logger.debug(
            f"Published {event.type.value} for {event.aggregate_id} "
            f"to {delivered} subscriber(s)"
        )
        return delivered
