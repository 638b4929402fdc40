"""
Transition executor: the single mutation choke-point for aggregate status.

execute() validates a requested transition against the rule table, runs the
edge's guard, applies a conditional update keyed on the status it read and
appends the audit record, all in one database transaction.

The executor performs no external I/O. Escrow and notification hooks are
run by LifecycleService after a successful result.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from backend.src.models import EventStatus, TicketStatus
from backend.src.services.exceptions import (
    ConcurrentModificationError,
    GuardRejectedError,
    InvalidTransitionError,
    PersistenceError,
    TerminalStateError,
)
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_context import TransitionContext
from backend.src.services.transition_guards import get_guard
from backend.src.services.transition_rules import (
    AggregateKind,
    Status,
    edge_key,
    is_terminal,
    is_valid_transition,
    parse_status,
)
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a successful transition.

    Attributes:
        aggregate_kind: Kind of the transitioned aggregate
        aggregate_id: GUID of the aggregate
        row_id: Internal row id of the aggregate
        previous_status: Status before the transition
        new_status: Status after the transition
        transitioned_at: When the transition was applied (UTC)
        audit_guid: GUID of the audit record (stx_xxx)
        triggered_by: Actor recorded in the audit record
    """
    aggregate_kind: AggregateKind
    aggregate_id: str
    row_id: int
    previous_status: Status
    new_status: Status
    transitioned_at: datetime
    audit_guid: str
    triggered_by: str


class TransitionExecutor:
    """
    Applies guarded, optimistically locked status transitions.

    Usage:
        >>> executor = TransitionExecutor(StatusLedger(db))
        >>> result = executor.execute(
        ...     AggregateKind.TICKET, "tkt_01hgw...", TicketStatus.STAKED,
        ...     TransitionContext(stake=StakeData(amount="10", tx_hash="0xabc")),
        ... )
        >>> result.previous_status
        <TicketStatus.APPROVED: 'approved'>
    """

    def __init__(
        self,
        ledger: StatusLedger,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.clock = clock

    def execute(
        self,
        kind: Union[AggregateKind, str],
        aggregate_id: str,
        target: Union[Status, str],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """
        Transition an aggregate to ``target``.

        Raises:
            NotFoundError: Aggregate doesn't exist
            TerminalStateError: Current status is terminal
            InvalidTransitionError: (current, target) is not a declared edge
            GuardRejectedError: The edge's guard refused
            ConcurrentModificationError: Status changed between read and write
            PersistenceError: The datastore failed
        """
        kind = AggregateKind(kind)
        context = context or TransitionContext()
        target_value = target.value if hasattr(target, "value") else str(target)

        try:
            row_id = self.ledger.resolve_id(kind, aggregate_id)
            current = self.ledger.get_status(kind, row_id)
        except SQLAlchemyError as e:
            self._rollback()
            raise PersistenceError(kind.value, aggregate_id, None, target_value, str(e))

        if is_terminal(kind, current):
            raise TerminalStateError(kind.value, aggregate_id, current.value, target_value)

        try:
            target = parse_status(kind, target)
        except ValueError:
            raise InvalidTransitionError(kind.value, aggregate_id, current.value, target_value)

        if not is_valid_transition(kind, current, target):
            raise InvalidTransitionError(kind.value, aggregate_id, current.value, target.value)

        now = self.clock()

        guard = get_guard(kind, edge_key(current, target))
        if guard is not None:
            try:
                verdict = guard(self.ledger, row_id, context, now)
            except SQLAlchemyError as e:
                self._rollback()
                raise PersistenceError(kind.value, aggregate_id, current.value, target.value, str(e))
            if not verdict.allowed:
                logger.info(
                    f"Guard rejected {kind.value} {aggregate_id} "
                    f"{current.value} -> {target.value}: {verdict.reason}"
                )
                raise GuardRejectedError(
                    kind.value, aggregate_id, current.value, target.value,
                    verdict.reason or "Guard check failed"
                )

        side_fields = self._side_fields(kind, target, context, now)

        try:
            applied = self.ledger.compare_and_set_status(
                kind, row_id, current, target, now, side_fields
            )
            if not applied:
                self._rollback()
                logger.info(
                    f"Concurrent modification of {kind.value} {aggregate_id}: "
                    f"status is no longer '{current.value}'"
                )
                raise ConcurrentModificationError(
                    kind.value, aggregate_id, current.value, target.value
                )

            metadata = dict(context.metadata)
            metadata.update(_jsonable(side_fields))
            record = self.ledger.append_audit(
                kind, row_id, current, target,
                context.triggered_by, context.reason, metadata, now,
            )
            audit_guid = record.guid
            self.ledger.db.commit()
        except SQLAlchemyError as e:
            self._rollback()
            logger.error(
                f"Failed to persist {kind.value} {aggregate_id} "
                f"{current.value} -> {target.value}: {e}"
            )
            raise PersistenceError(kind.value, aggregate_id, current.value, target.value, str(e))

        logger.info(
            f"Transitioned {kind.value} {aggregate_id}: {current.value} -> {target.value}",
            extra={
                "aggregate_kind": kind.value,
                "aggregate_id": aggregate_id,
                "from_status": current.value,
                "to_status": target.value,
                "triggered_by": context.triggered_by,
            }
        )

        return TransitionResult(
            aggregate_kind=kind,
            aggregate_id=aggregate_id,
            row_id=row_id,
            previous_status=current,
            new_status=target,
            transitioned_at=now,
            audit_guid=audit_guid,
            triggered_by=context.triggered_by,
        )

    @staticmethod
    def _side_fields(
        kind: AggregateKind,
        target: Status,
        context: TransitionContext,
        now: datetime,
    ) -> Dict[str, Any]:
        """Columns written together with the status for a given target."""
        fields: Dict[str, Any] = {}

        if kind == AggregateKind.EVENT:
            if target == EventStatus.PUBLISHED:
                if context.scheduled_start_at is not None:
                    fields["scheduled_start_at"] = context.scheduled_start_at
                if context.scheduled_end_at is not None:
                    fields["scheduled_end_at"] = context.scheduled_end_at
            return fields

        if target == TicketStatus.STAKED and context.stake is not None:
            fields["stake_amount"] = context.stake.amount
            fields["stake_currency"] = context.stake.currency
            fields["stake_tx_hash"] = context.stake.tx_hash
            fields["stake_wallet_address"] = context.stake.wallet_address
        elif target == TicketStatus.CHECKED_IN:
            fields["checked_in_at"] = now
        elif target == TicketStatus.REFUNDED:
            fields["refunded_at"] = now
            fields["refund_tx_hash"] = context.refund_tx_hash
        elif target == TicketStatus.FORFEITED:
            fields["forfeited_at"] = now
        return fields

    def _rollback(self) -> None:
        try:
            self.ledger.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in values.items()
    }
