"""Create lifecycle tables

Revision ID: 001_lifecycle_tables
Revises:
Create Date: 2026-10-18

Creates the two lifecycle aggregates and their ledgers:
- events: Event aggregate (draft/published/live/ended/archived)
- tickets: Ticket aggregate, one guest's claim on one event
- status_transitions: Append-only audit log of every transition
- scheduled_transitions: Durable timers for the exact-time scheduler

Statuses are stored as strings (native_enum=False on the models).
UUID columns use PostgreSQL UUID, falling back to 16-byte binary on SQLite.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_lifecycle_tables'
down_revision = None
branch_labels = None
depends_on = None


def _uuid_column() -> sa.Column:
    return sa.Column(
        'uuid',
        postgresql.UUID(as_uuid=True).with_variant(sa.LargeBinary(16), 'sqlite'),
        nullable=False
    )


def _json_type():
    return postgresql.JSONB().with_variant(sa.JSON(), 'sqlite')


def upgrade() -> None:
    """Create events, tickets, status_transitions and scheduled_transitions."""
    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        _uuid_column(),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft'),
        sa.Column('scheduled_start_at', sa.DateTime(), nullable=True),
        sa.Column('scheduled_end_at', sa.DateTime(), nullable=True),
        sa.Column('previous_status', sa.String(32), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_events_uuid', 'events', ['uuid'], unique=True)
    op.create_index('ix_events_status', 'events', ['status'])
    op.create_index('ix_events_updated_at', 'events', ['updated_at'])
    op.create_index('ix_events_status_start', 'events', ['status', 'scheduled_start_at'])
    op.create_index('ix_events_status_end', 'events', ['status', 'scheduled_end_at'])

    op.create_table(
        'tickets',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        _uuid_column(),
        sa.Column(
            'event_id',
            sa.Integer(),
            sa.ForeignKey('events.id', name='fk_tickets_event_id', ondelete='CASCADE'),
            nullable=False
        ),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('stake_amount', sa.String(78), nullable=True),
        sa.Column('stake_currency', sa.String(16), nullable=True),
        sa.Column('stake_tx_hash', sa.String(128), nullable=True),
        sa.Column('stake_wallet_address', sa.String(128), nullable=True),
        sa.Column('refund_tx_hash', sa.String(128), nullable=True),
        sa.Column('checked_in_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('forfeited_at', sa.DateTime(), nullable=True),
        sa.Column('escrow_tx_hash', sa.String(128), nullable=True),
        sa.Column('escrow_settled_at', sa.DateTime(), nullable=True),
        sa.Column('previous_status', sa.String(32), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_tickets_uuid', 'tickets', ['uuid'], unique=True)
    op.create_index('ix_tickets_event_id', 'tickets', ['event_id'])
    op.create_index('ix_tickets_status', 'tickets', ['status'])
    op.create_index('ix_tickets_updated_at', 'tickets', ['updated_at'])
    op.create_index('ix_tickets_event_status', 'tickets', ['event_id', 'status'])

    op.create_table(
        'status_transitions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        _uuid_column(),
        sa.Column('aggregate_kind', sa.String(16), nullable=False),
        sa.Column('aggregate_id', sa.Integer(), nullable=False),
        sa.Column('from_status', sa.String(32), nullable=False),
        sa.Column('to_status', sa.String(32), nullable=False),
        sa.Column('triggered_by', sa.String(255), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('metadata_json', _json_type(), nullable=True),
        sa.Column('transitioned_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_status_transitions_uuid', 'status_transitions', ['uuid'], unique=True)
    op.create_index(
        'ix_status_transitions_aggregate',
        'status_transitions',
        ['aggregate_kind', 'aggregate_id', 'transitioned_at']
    )

    op.create_table(
        'scheduled_transitions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        _uuid_column(),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('aggregate_kind', sa.String(16), nullable=False),
        sa.Column('aggregate_id', sa.Integer(), nullable=False),
        sa.Column('target_status', sa.String(32), nullable=False, server_default=''),
        sa.Column('expected_prior_status', sa.String(32), nullable=True),
        sa.Column('fire_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='scheduled'),
        sa.Column('claim_token', sa.String(64), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('fired_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            'action', 'aggregate_kind', 'aggregate_id', 'target_status', 'fire_at',
            name='uq_scheduled_transitions_request'
        ),
    )
    op.create_index('ix_scheduled_transitions_uuid', 'scheduled_transitions', ['uuid'], unique=True)
    op.create_index('ix_scheduled_transitions_status', 'scheduled_transitions', ['status'])
    op.create_index(
        'ix_scheduled_transitions_status_fire_at',
        'scheduled_transitions',
        ['status', 'fire_at']
    )


def downgrade() -> None:
    """Drop all lifecycle tables."""
    op.drop_table('scheduled_transitions')
    op.drop_table('status_transitions')
    op.drop_table('tickets')
    op.drop_table('events')
