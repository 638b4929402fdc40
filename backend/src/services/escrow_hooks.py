"""
Escrow hooks run after ticket transitions commit.

- on_ticket_checked_in: release the guest's stake
- on_ticket_forfeited: forfeit the stake to the organizer
- retry_unsettled: the hourly settlement job that re-invokes the matching
  hook for terminal tickets whose escrow call never succeeded

Hooks are best-effort. A failed escrow call is logged and leaves
escrow_tx_hash empty so retry_unsettled picks the ticket up again; the
ticket's status is never touched.

The transition path never waits on the escrow service: dispatch() starts
the hook as a task on the running loop and returns. Without a running loop
(a plain synchronous caller) nothing is sent and the settlement job picks
the ticket up on its next run.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from backend.src.models import Ticket, TicketStatus
from backend.src.services.escrow_client import EscrowClient, EscrowResult
from backend.src.services.job_summary import JobSummary
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_rules import AggregateKind
from backend.src.utils.logging_config import get_logger


logger = get_logger("hooks")

# Maximum tickets the settlement job handles per run
SETTLEMENT_BATCH_LIMIT = 100

OPERATION_FOR_STATUS = {
    TicketStatus.CHECKED_IN: "release",
    TicketStatus.FORFEITED: "forfeit",
}


class EscrowHooks:
    """Escrow side effects for CHECKED_IN and FORFEITED tickets."""

    def __init__(
        self,
        ledger: StatusLedger,
        client: EscrowClient,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.client = client
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[int] = set()

    def dispatch(self, ticket_id: int, status: TicketStatus) -> Optional[asyncio.Task]:
        """
        Start the hook for a ticket that just reached ``status``.

        Returns the task, or None when the status has no escrow side effect
        or no loop is running.
        """
        operation = OPERATION_FOR_STATUS.get(status)
        if operation is None:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.info(f"No running asyncio loop, escrow {operation} for ticket {ticket_id} left for settlement job")
            return None

        task = loop.create_task(self._settle(ticket_id, operation))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Escrow hook task failed: {task.exception()}")

    async def on_ticket_checked_in(self, ticket_id: int) -> Optional[EscrowResult]:
        """Release the stake of a checked-in ticket, if it has one."""
        return await self._settle(ticket_id, "release")

    async def on_ticket_forfeited(self, ticket_id: int) -> Optional[EscrowResult]:
        """Forfeit the stake of a no-show ticket, if it has one."""
        return await self._settle(ticket_id, "forfeit")

    async def retry_unsettled(self, limit: int = SETTLEMENT_BATCH_LIMIT) -> JobSummary:
        """
        Re-run the escrow hook for tickets that never got settled.

        Idempotent: a ticket leaves the candidate set as soon as its escrow
        transaction hash is recorded.
        """
        summary = JobSummary(job="escrow_settlement")
        tickets = [
            (t.id, t.guid, OPERATION_FOR_STATUS[t.status])
            for t in self.ledger.find_unsettled_tickets(limit)
        ]
        summary.found = len(tickets)

        for ticket_id, ticket_guid, operation in tickets:
            result = await self._settle(ticket_id, operation)

            if result is None:
                summary.skipped += 1
            elif result.success:
                summary.succeeded += 1
            else:
                summary.record_failure(f"{ticket_guid}: {result.error}")

        if summary.found:
            logger.info(
                f"Escrow settlement: {summary.succeeded} settled, "
                f"{summary.failed} failed, {summary.skipped} skipped"
            )
        return summary

    async def wait_idle(self) -> None:
        """Wait for every dispatched hook to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel dispatched hooks; their tickets stay unsettled for the next job run."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _settle(self, ticket_id: int, operation: str) -> Optional[EscrowResult]:
        if ticket_id in self._in_flight:
            logger.info(f"Escrow {operation} for ticket {ticket_id} already in flight")
            return None

        ticket: Optional[Ticket] = self.ledger.get(AggregateKind.TICKET, ticket_id)
        if ticket is None:
            logger.warning(f"Escrow {operation} skipped: ticket {ticket_id} not found")
            return None
        if not ticket.has_stake:
            return None
        if ticket.escrow_tx_hash:
            logger.info(
                f"Escrow {operation} for {ticket.guid} already settled "
                f"({ticket.escrow_tx_hash})"
            )
            return None

        ticket_guid = ticket.guid
        event_guid = ticket.event.guid if ticket.event is not None else None
        wallet_address = ticket.stake_wallet_address
        call = self.client.release if operation == "release" else self.client.forfeit

        self._in_flight.add(ticket_id)
        try:
            result = await call(event_guid, ticket_guid, wallet_address)
        finally:
            self._in_flight.discard(ticket_id)

        if not result.success:
            logger.error(
                f"Escrow {operation} failed for {ticket_guid}: {result.error}",
                extra={"ticket_id": ticket_guid, "operation": operation}
            )
            return result

        if result.tx_hash:
            try:
                self.ledger.record_escrow_settlement(ticket_id, result.tx_hash, self.clock())
            except SQLAlchemyError as e:
                self.ledger.db.rollback()
                logger.error(f"Failed to record escrow {operation} for {ticket_guid}: {e}")
                return EscrowResult(success=False, tx_hash=result.tx_hash, error=str(e))

        logger.info(
            f"Escrow {operation} for {ticket_guid}: {result.tx_hash}",
            extra={"ticket_id": ticket_guid, "operation": operation, "tx_hash": result.tx_hash}
        )
        return result
