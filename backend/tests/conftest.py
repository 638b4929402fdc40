"""
Pytest configuration and fixtures for backend tests.

Provides shared fixtures for:
- Test database sessions
- A controllable clock
- Wired lifecycle components (ledger, executor, bus, hooks, facade)
- Sample data factories
"""

import os
import pytest
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['LIFECYCLE_DB_URL'] = 'sqlite:///:memory:'
os.environ['LIFECYCLE_ENV'] = 'test'
os.environ['LIFECYCLE_BACKGROUND_JOBS_ENABLED'] = 'false'
os.environ['ESCROW_SERVICE_URL'] = ''

from backend.src.models import Base, Event, EventStatus, Ticket, TicketStatus
from backend.src.services.domain_events import DomainEventBus
from backend.src.services.escrow_client import EscrowClient
from backend.src.services.escrow_hooks import EscrowHooks
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.transition_executor import TransitionExecutor


# Reference instant for time-driven tests
T0 = datetime(2026, 3, 1, 18, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    from sqlalchemy import event

    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Enable foreign key constraints for SQLite
    # This must be set for each connection
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_db_session(test_db_engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Lifecycle Fixtures
# ============================================================================

@pytest.fixture
def clock():
    """Controllable clock starting at T0."""
    return FakeClock(T0)


@pytest.fixture
def ledger(test_db_session):
    return StatusLedger(test_db_session)


@pytest.fixture
def bus():
    """Domain event bus with no subscribers."""
    return DomainEventBus()


@pytest.fixture
def executor(ledger, clock):
    return TransitionExecutor(ledger, clock)


@pytest.fixture
def escrow_client():
    """Escrow client in no-signer mode (no HTTP connection to close)."""
    return EscrowClient()


@pytest.fixture
def hooks(ledger, escrow_client, clock):
    return EscrowHooks(ledger, escrow_client, clock)


@pytest.fixture
def lifecycle(ledger, executor, bus, hooks):
    """Lifecycle facade with escrow hooks and a bare bus (no scheduler chaining)."""
    return LifecycleService(ledger, executor, bus, hooks)


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_event(test_db_session):
    """Factory for creating sample Event models in the database."""
    def _create(
        title='Spring Launch Party',
        status=EventStatus.DRAFT,
        scheduled_start_at=None,
        scheduled_end_at=None,
        **kwargs
    ):
        event = Event(
            title=title,
            status=status,
            scheduled_start_at=scheduled_start_at,
            scheduled_end_at=scheduled_end_at,
            **kwargs
        )
        test_db_session.add(event)
        test_db_session.commit()
        test_db_session.refresh(event)
        return event
    return _create


@pytest.fixture
def sample_ticket(test_db_session):
    """
    Factory for creating sample Ticket models in the database.

    A ticket created directly in STAKED gets default stake metadata
    unless stake fields are passed explicitly.
    """
    def _create(event, status=TicketStatus.PENDING, guest_name='Ada Guest', **kwargs):
        if status == TicketStatus.STAKED:
            kwargs.setdefault('stake_amount', '1000000')
            kwargs.setdefault('stake_currency', 'USDC')
            kwargs.setdefault('stake_tx_hash', '0xstake')
            kwargs.setdefault('stake_wallet_address', '0xwallet')
        ticket = Ticket(
            event_id=event.id,
            status=status,
            guest_name=guest_name,
            guest_email='guest@example.com',
            **kwargs
        )
        test_db_session.add(ticket)
        test_db_session.commit()
        test_db_session.refresh(ticket)
        return ticket
    return _create
