"""
Guard predicates for specific status edges.

A guard is registered for one (aggregate kind, edge name) pair and is
called as ``guard(ledger, aggregate_id, context, now)``. It returns a
GuardResult; a rejected result carries the human-readable reason that the
executor surfaces in GuardRejectedError.

Guards only read. They never write to the ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from backend.src.models import EventStatus
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_rules import AggregateKind


@dataclass(frozen=True)
class GuardResult:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardResult":
        return cls(True)

    @classmethod
    def reject(cls, reason: str) -> "GuardResult":
        return cls(False, reason)


GuardFunction = Callable[[StatusLedger, int, TransitionContext, datetime], GuardResult]

GUARDS: Dict[Tuple[AggregateKind, str], GuardFunction] = {}


def guard(kind: AggregateKind, edge: str):
    """Register a guard for an edge, e.g. ``@guard(AggregateKind.TICKET, "staked->refunded")``."""
    def decorator(func: GuardFunction) -> GuardFunction:
        GUARDS[(kind, edge)] = func
        return func
    return decorator


def get_guard(kind: AggregateKind, edge: str) -> Optional[GuardFunction]:
    return GUARDS.get((kind, edge))


# ============================================================================
# Event guards
# ============================================================================

@guard(AggregateKind.EVENT, "draft->published")
def can_publish(ledger, event_id, context, now):
    """A published event needs a title and a scheduled window that is not inverted."""
    event = ledger.get(AggregateKind.EVENT, event_id)
    if event is None:
        return GuardResult.reject("Event not found")

    if not (event.title or "").strip():
        return GuardResult.reject("Event must have a title before publishing")

    start = context.scheduled_start_at or event.scheduled_start_at
    if start is None:
        return GuardResult.reject("Event must have a date before publishing")

    end = context.scheduled_end_at or event.scheduled_end_at
    if end is not None and end < start:
        return GuardResult.reject("Event end must not be before its start")

    return GuardResult.allow()


# ============================================================================
# Ticket guards
# ============================================================================

@guard(AggregateKind.TICKET, "approved->staked")
def requires_stake(ledger, ticket_id, context, now):
    if context.stake is None:
        return GuardResult.reject("Stake data required for staking transition")
    if not context.stake.tx_hash:
        return GuardResult.reject("Transaction hash required for staking")
    return GuardResult.allow()


@guard(AggregateKind.TICKET, "staked->refunded")
def requires_refund_hash(ledger, ticket_id, context, now):
    if not context.refund_tx_hash:
        return GuardResult.reject("Refund transaction hash required")
    return GuardResult.allow()


@guard(AggregateKind.TICKET, "staked->forfeited")
def event_has_ended(ledger, ticket_id, context, now):
    """
    Allow forfeiture once the parent event is over.

    Either condition is sufficient: the event is ENDED/ARCHIVED, or its
    scheduled end is in the past even though nothing has flipped it to
    ENDED yet. The second branch is what lets the no-show paths catch up
    on events whose end transition was missed.
    """
    ticket = ledger.get(AggregateKind.TICKET, ticket_id)
    if ticket is None:
        return GuardResult.reject("Guest not found")

    event = ledger.get(AggregateKind.EVENT, ticket.event_id)
    if event is None:
        return GuardResult.reject("Event not found")

    event_ended = event.status in (EventStatus.ENDED, EventStatus.ARCHIVED)
    end_passed = event.scheduled_end_at is not None and event.scheduled_end_at < now

    if not (event_ended or end_passed):
        return GuardResult.reject("Cannot forfeit until event has ended")
    return GuardResult.allow()
