"""
Ticket model for guest registrations.

A Ticket is one guest's claim on one Event. It may carry a stake (funds held
in escrow) that is released on check-in or forfeited when the guest doesn't
show up.

Design Rationale:
- Stake fields are populated only when entering STAKED
- refund_tx_hash is populated only when entering REFUNDED
- escrow_tx_hash/escrow_settled_at record the escrow release or forfeit that
  follows CHECKED_IN/FORFEITED; an empty hash marks an unsettled stake
- Amounts are kept as strings, they may exceed 64-bit integer precision
"""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin


class TicketStatus(str, enum.Enum):
    """
    Ticket status enumeration.

    REJECTED, CHECKED_IN, REFUNDED, FORFEITED and REVOKED are terminal.
    """
    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    ISSUED = "issued"
    STAKED = "staked"
    CHECKED_IN = "checked_in"
    REFUNDED = "refunded"
    FORFEITED = "forfeited"
    REVOKED = "revoked"


class Ticket(Base, GuidMixin):
    """
    Ticket aggregate.

    Attributes:
        id: Primary key (internal, never exposed)
        uuid: UUIDv7 for external identification (inherited from GuidMixin)
        guid: GUID string property (tkt_xxx, inherited from GuidMixin)
        event_id: Parent event (FK to events)
        guest_name: Display name of the guest
        guest_email: Contact email of the guest
        status: Current lifecycle status
        stake_amount: Staked amount in the currency's smallest unit
        stake_currency: Currency or token symbol
        stake_tx_hash: Chain transaction that created the stake
        stake_wallet_address: Wallet the stake was paid from
        refund_tx_hash: Chain transaction of the refund
        checked_in_at: Admission scan timestamp
        refunded_at: Refund timestamp
        forfeited_at: Forfeiture timestamp
        escrow_tx_hash: Release/forfeit transaction reported by the escrow service
        escrow_settled_at: When the escrow call succeeded
        previous_status: Status before the last transition
        status_changed_at: When the last transition was applied
        created_at: Creation timestamp
        updated_at: Last modification timestamp
    """

    __tablename__ = "tickets"

    # GUID prefix for Ticket entities
    GUID_PREFIX = "tkt"

    id = Column(Integer, primary_key=True, autoincrement=True)

    event_id = Column(
        Integer,
        ForeignKey("events.id", name="fk_tickets_event_id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    guest_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True)

    status = Column(
        Enum(TicketStatus, native_enum=False, values_callable=lambda x: [e.value for e in x]),
        default=TicketStatus.PENDING,
        nullable=False,
        index=True
    )

    # Stake metadata (STAKED)
    stake_amount = Column(String(78), nullable=True)
    stake_currency = Column(String(16), nullable=True)
    stake_tx_hash = Column(String(128), nullable=True)
    stake_wallet_address = Column(String(128), nullable=True)

    # Terminal side fields
    refund_tx_hash = Column(String(128), nullable=True)
    checked_in_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    forfeited_at = Column(DateTime, nullable=True)

    # Escrow settlement
    escrow_tx_hash = Column(String(128), nullable=True)
    escrow_settled_at = Column(DateTime, nullable=True)

    previous_status = Column(String(32), nullable=True)
    status_changed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        index=True
    )

    event = relationship("Event", back_populates="tickets")

    __table_args__ = (
        Index("ix_tickets_event_status", "event_id", "status"),
    )

    @property
    def has_stake(self) -> bool:
        """True when the ticket carries stake metadata."""
        return bool(self.stake_tx_hash or self.stake_amount)

    def __repr__(self) -> str:
        return (
            f"<Ticket(id={self.id}, event_id={self.event_id}, "
            f"status={self.status.value if self.status else None})>"
        )
