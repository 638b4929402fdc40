"""
Lifecycle service: the public API for aggregate status.

transition() is the only supported way to change an Event's or a Ticket's
status. It delegates to the TransitionExecutor and, once the transition has
committed, publishes the matching domain event and dispatches the escrow
hooks as background tasks.
The scheduler, the sweeps, the reconciliation loop and the HTTP layer all
go through this facade, so every committed transition emits exactly one
domain event.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from backend.src.models import Event, Ticket, StatusTransition
from backend.src.services.domain_events import DomainEvent, DomainEventBus, event_type_for
from backend.src.services.escrow_hooks import EscrowHooks
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_executor import TransitionExecutor, TransitionResult
from backend.src.services.transition_rules import (
    AggregateKind,
    Status,
    describe_status,
    is_terminal,
    valid_next_statuses,
)
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class LifecycleService:
    """
    Facade over the executor, the domain event bus and the escrow hooks.

    Usage:
        >>> service = LifecycleService(ledger, executor, bus, hooks)
        >>> service.transition("event", "evt_01hgw...", "published",
        ...                    TransitionContext.for_user("42", scheduled_start_at=start))
        >>> service.get_status_info("evt_01hgw...")["current_status"]
        'published'
    """

    def __init__(
        self,
        ledger: StatusLedger,
        executor: TransitionExecutor,
        bus: DomainEventBus,
        hooks: Optional[EscrowHooks] = None,
    ):
        self.ledger = ledger
        self.executor = executor
        self.bus = bus
        self.hooks = hooks

    def transition(
        self,
        kind: Union[AggregateKind, str],
        aggregate_id: str,
        target: Union[Status, str],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """
        Transition an aggregate, then fan out the domain event and hooks.

        Raises the TransitionExecutor's errors unchanged. Nothing that
        happens after the commit can make this call fail.
        """
        context = context or TransitionContext()
        result = self.executor.execute(kind, aggregate_id, target, context)
        self._after_transition(result, context)
        return result

    def _after_transition(self, result: TransitionResult, context: TransitionContext) -> None:
        event_type = event_type_for(result.aggregate_kind, result.new_status)
        if event_type is not None:
            self.bus.publish(DomainEvent(
                type=event_type,
                aggregate_kind=result.aggregate_kind,
                aggregate_id=result.aggregate_id,
                row_id=result.row_id,
                previous_status=result.previous_status,
                new_status=result.new_status,
                occurred_at=result.transitioned_at,
                triggered_by=result.triggered_by,
                payload={"reason": context.reason, **context.metadata},
            ))

        if self.hooks is None or result.aggregate_kind != AggregateKind.TICKET:
            return

        try:
            self.hooks.dispatch(result.row_id, result.new_status)
        except Exception as e:
            # The transition is committed; the settlement job retries the hook
            logger.error(
                f"Escrow hook failed for {result.aggregate_id} "
                f"({result.new_status.value}): {e}",
                exc_info=True
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status_info(self, aggregate_id: str) -> Dict[str, Any]:
        """
        Describe an aggregate's current status and where it can go next.

        The aggregate kind is inferred from the GUID prefix.

        Raises:
            NotFoundError: If the GUID is malformed or the aggregate doesn't exist
        """
        kind = self.ledger.kind_for_guid(aggregate_id)
        row = self.ledger.get_by_guid(kind, aggregate_id)
        current = row.status

        return {
            "aggregate_kind": kind.value,
            "aggregate_id": aggregate_id,
            "current_status": current.value,
            "valid_next_statuses": [s.value for s in valid_next_statuses(kind, current)],
            "is_terminal": is_terminal(kind, current),
            "description": describe_status(current),
            "lifecycle_fields": self._lifecycle_fields(kind, row),
        }

    def history(self, aggregate_id: str) -> List[StatusTransition]:
        """Audit records of an aggregate, oldest first."""
        kind = self.ledger.kind_for_guid(aggregate_id)
        row_id = self.ledger.resolve_id(kind, aggregate_id)
        return self.ledger.history(kind, row_id)

    def _lifecycle_fields(self, kind: AggregateKind, row: Union[Event, Ticket]) -> Dict[str, Any]:
        if kind == AggregateKind.EVENT:
            return {
                "scheduled_start_at": _iso(row.scheduled_start_at),
                "scheduled_end_at": _iso(row.scheduled_end_at),
                "previous_status": row.previous_status,
                "last_transition_at": _iso(row.status_changed_at),
            }
        return {
            "event_id": row.event.guid if row.event is not None else None,
            "stake_amount": row.stake_amount,
            "stake_currency": row.stake_currency,
            "stake_tx_hash": row.stake_tx_hash,
            "stake_wallet_address": row.stake_wallet_address,
            "checked_in_at": _iso(row.checked_in_at),
            "refund_tx_hash": row.refund_tx_hash,
            "refunded_at": _iso(row.refunded_at),
            "forfeited_at": _iso(row.forfeited_at),
            "escrow_tx_hash": row.escrow_tx_hash,
            "previous_status": row.previous_status,
            "last_transition_at": _iso(row.status_changed_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
