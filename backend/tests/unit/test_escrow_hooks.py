"""
Unit tests for EscrowHooks and the escrow settlement job.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from backend.src.models import EventStatus, TicketStatus
from backend.src.services.escrow_client import EscrowResult
from backend.src.services.escrow_hooks import EscrowHooks
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.transition_rules import AggregateKind


@pytest.fixture
def ended_event(sample_event, clock):
    return sample_event(
        status=EventStatus.ENDED,
        scheduled_start_at=clock() - timedelta(hours=4),
        scheduled_end_at=clock() - timedelta(hours=2),
    )


@pytest.fixture
def client():
    return AsyncMock()


@pytest.fixture
def escrow_hooks(ledger, client, clock):
    return EscrowHooks(ledger, client, clock)


class SlowEscrow:
    """Escrow client whose calls block until ``proceed`` is set."""

    def __init__(self):
        self.proceed = asyncio.Event()
        self.calls = []

    async def release(self, event_id, ticket_id, wallet_address):
        self.calls.append(("release", ticket_id))
        await self.proceed.wait()
        return EscrowResult(success=True, tx_hash="0xslow")

    async def forfeit(self, event_id, ticket_id, wallet_address):
        self.calls.append(("forfeit", ticket_id))
        await self.proceed.wait()
        return EscrowResult(success=True, tx_hash="0xslow")


class TestHooks:

    @pytest.mark.asyncio
    async def test_release_on_check_in(self, escrow_hooks, client, ledger, sample_ticket, ended_event, clock):
        client.release.return_value = EscrowResult(success=True, tx_hash="0xrelease")
        ticket = sample_ticket(
            ended_event, status=TicketStatus.CHECKED_IN,
            stake_tx_hash="0xstake", stake_wallet_address="0xwallet",
        )

        result = await escrow_hooks.on_ticket_checked_in(ticket.id)

        assert result.success
        client.release.assert_awaited_once_with(ended_event.guid, ticket.guid, "0xwallet")
        row = ledger.get(AggregateKind.TICKET, ticket.id)
        assert row.escrow_tx_hash == "0xrelease"
        assert row.escrow_settled_at == clock()

    @pytest.mark.asyncio
    async def test_forfeit_uses_forfeit_call(self, escrow_hooks, client, sample_ticket, ended_event):
        client.forfeit.return_value = EscrowResult(success=True, tx_hash="0xforfeit")
        ticket = sample_ticket(ended_event, status=TicketStatus.FORFEITED, stake_amount="10")

        await escrow_hooks.on_ticket_forfeited(ticket.id)

        client.forfeit.assert_awaited_once()
        client.release.assert_not_called()

    @pytest.mark.asyncio
    async def test_ticket_without_stake_is_skipped(self, escrow_hooks, client, sample_ticket, ended_event):
        ticket = sample_ticket(ended_event, status=TicketStatus.CHECKED_IN)
        assert await escrow_hooks.on_ticket_checked_in(ticket.id) is None
        client.release.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_settled_ticket_is_skipped(self, escrow_hooks, client, sample_ticket, ended_event):
        ticket = sample_ticket(
            ended_event, status=TicketStatus.CHECKED_IN,
            stake_tx_hash="0xstake", escrow_tx_hash="0xdone",
        )
        assert await escrow_hooks.on_ticket_checked_in(ticket.id) is None
        client.release.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_ticket(self, escrow_hooks, client):
        assert await escrow_hooks.on_ticket_forfeited(999) is None

    @pytest.mark.asyncio
    async def test_failure_leaves_ticket_unsettled(self, escrow_hooks, client, ledger, sample_ticket, ended_event):
        client.forfeit.return_value = EscrowResult(success=False, error="rpc down")
        ticket = sample_ticket(ended_event, status=TicketStatus.FORFEITED, stake_tx_hash="0xstake")

        result = await escrow_hooks.on_ticket_forfeited(ticket.id)

        assert not result.success
        row = ledger.get(AggregateKind.TICKET, ticket.id)
        assert row.escrow_tx_hash is None
        assert row.status == TicketStatus.FORFEITED


class TestDispatch:

    @pytest.mark.asyncio
    async def test_dispatch_runs_hook_as_task(self, escrow_hooks, client, ledger, sample_ticket, ended_event):
        client.release.return_value = EscrowResult(success=True, tx_hash="0xrelease")
        ticket = sample_ticket(ended_event, status=TicketStatus.CHECKED_IN, stake_tx_hash="0xstake")

        task = escrow_hooks.dispatch(ticket.id, TicketStatus.CHECKED_IN)
        await escrow_hooks.wait_idle()

        assert task.done()
        assert ledger.get(AggregateKind.TICKET, ticket.id).escrow_tx_hash == "0xrelease"

    @pytest.mark.asyncio
    async def test_statuses_without_escrow_effect(self, escrow_hooks, client):
        assert escrow_hooks.dispatch(1, TicketStatus.REVOKED) is None
        assert escrow_hooks.dispatch(1, TicketStatus.STAKED) is None
        client.release.assert_not_called()

    def test_without_running_loop_nothing_is_sent(self, escrow_hooks, client, sample_ticket, ended_event):
        ticket = sample_ticket(ended_event, status=TicketStatus.CHECKED_IN, stake_tx_hash="0xstake")

        assert escrow_hooks.dispatch(ticket.id, TicketStatus.CHECKED_IN) is None
        client.release.assert_not_called()

    @pytest.mark.asyncio
    async def test_check_in_does_not_wait_for_escrow(self, ledger, executor, bus, sample_ticket, ended_event, clock):
        escrow = SlowEscrow()
        hooks = EscrowHooks(ledger, escrow, clock)
        lifecycle = LifecycleService(ledger, executor, bus, hooks)
        ticket = sample_ticket(ended_event, status=TicketStatus.ISSUED, stake_tx_hash="0xstake")

        lifecycle.transition(AggregateKind.TICKET, ticket.guid, TicketStatus.CHECKED_IN)
        await asyncio.sleep(0)

        # Transition committed while the escrow call is still outstanding
        assert ledger.get_status(AggregateKind.TICKET, ticket.id) == TicketStatus.CHECKED_IN
        assert escrow.calls == [("release", ticket.guid)]
        assert ledger.get(AggregateKind.TICKET, ticket.id).escrow_tx_hash is None

        escrow.proceed.set()
        await hooks.wait_idle()

        assert ledger.get(AggregateKind.TICKET, ticket.id).escrow_tx_hash == "0xslow"

    @pytest.mark.asyncio
    async def test_in_flight_ticket_is_not_sent_twice(self, ledger, sample_ticket, ended_event, clock):
        escrow = SlowEscrow()
        hooks = EscrowHooks(ledger, escrow, clock)
        ticket = sample_ticket(ended_event, status=TicketStatus.FORFEITED, stake_tx_hash="0xstake")

        hooks.dispatch(ticket.id, TicketStatus.FORFEITED)
        await asyncio.sleep(0)
        summary = await hooks.retry_unsettled()

        assert summary.skipped == 1
        assert escrow.calls == [("forfeit", ticket.guid)]

        escrow.proceed.set()
        await hooks.wait_idle()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_outstanding_calls(self, ledger, sample_ticket, ended_event, clock):
        escrow = SlowEscrow()
        hooks = EscrowHooks(ledger, escrow, clock)
        ticket = sample_ticket(ended_event, status=TicketStatus.FORFEITED, stake_tx_hash="0xstake")

        task = hooks.dispatch(ticket.id, TicketStatus.FORFEITED)
        await asyncio.sleep(0)
        await hooks.shutdown()

        assert task.cancelled()
        assert ledger.get(AggregateKind.TICKET, ticket.id).escrow_tx_hash is None


class TestSettlementJob:

    @pytest.mark.asyncio
    async def test_retries_until_settled(self, escrow_hooks, client, ledger, sample_ticket, ended_event):
        checked_in = sample_ticket(ended_event, status=TicketStatus.CHECKED_IN, stake_tx_hash="0x1")
        forfeited = sample_ticket(ended_event, status=TicketStatus.FORFEITED, stake_tx_hash="0x2")
        client.release.return_value = EscrowResult(success=True, tx_hash="0xrelease")
        client.forfeit.return_value = EscrowResult(success=False, error="rpc down")

        first = await escrow_hooks.retry_unsettled()

        assert first.job == "escrow_settlement"
        assert first.found == 2
        assert first.succeeded == 1
        assert first.failed == 1
        assert forfeited.guid in first.errors[0]

        client.forfeit.return_value = EscrowResult(success=True, tx_hash="0xforfeit")
        second = await escrow_hooks.retry_unsettled()

        assert second.found == 1
        assert second.succeeded == 1
        assert ledger.get(AggregateKind.TICKET, checked_in.id).escrow_tx_hash == "0xrelease"
        assert ledger.get(AggregateKind.TICKET, forfeited.id).escrow_tx_hash == "0xforfeit"

        third = await escrow_hooks.retry_unsettled()
        assert third.found == 0

    @pytest.mark.asyncio
    async def test_respects_limit(self, escrow_hooks, client, sample_ticket, ended_event):
        client.release.return_value = EscrowResult(success=True, tx_hash="0xrelease")
        for _ in range(3):
            sample_ticket(ended_event, status=TicketStatus.CHECKED_IN, stake_tx_hash="0x1")

        assert (await escrow_hooks.retry_unsettled(limit=2)).found == 2
