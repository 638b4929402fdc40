"""
Event model for scheduled happenings.

An Event is one of the two lifecycle aggregates. It is created in DRAFT,
gets its scheduled window on publish, goes LIVE at the scheduled start,
ENDED at the scheduled end and is eventually ARCHIVED.

Design Rationale:
- status is owned by the status ledger; only the transition executor writes it
- previous_status/status_changed_at are denormalized from the audit ledger
  so that list views don't need to join status_transitions
- Scheduled instants are naive UTC, nullable until published
"""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, Index
from sqlalchemy.orm import relationship

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin


class EventStatus(str, enum.Enum):
    """
    Event status enumeration.

    - DRAFT: Being edited, not visible to guests
    - PUBLISHED: Visible, registration open, waiting for the start instant
    - LIVE: Happening now
    - ENDED: Finished, stakes can be settled
    - ARCHIVED: Terminal, read-only
    """
    DRAFT = "draft"
    PUBLISHED = "published"
    LIVE = "live"
    ENDED = "ended"
    ARCHIVED = "archived"


class Event(Base, GuidMixin):
    """
    Event aggregate.

    Attributes:
        id: Primary key (internal, never exposed)
        uuid: UUIDv7 for external identification (inherited from GuidMixin)
        guid: GUID string property (evt_xxx, inherited from GuidMixin)
        title: Display title (required to publish)
        description: Optional free text
        status: Current lifecycle status
        scheduled_start_at: When the event goes live (UTC)
        scheduled_end_at: When the event ends (UTC)
        previous_status: Status before the last transition
        status_changed_at: When the last transition was applied
        created_at: Creation timestamp
        updated_at: Last modification timestamp

    Relationships:
        tickets: Guest registrations for this event (one-to-many)

    Indexes:
        - (status, scheduled_start_at) for the start sweep
        - (status, scheduled_end_at) for the end sweep
        - updated_at for the reconciliation sample
    """

    __tablename__ = "events"

    # GUID prefix for Event entities
    GUID_PREFIX = "evt"

    id = Column(Integer, primary_key=True, autoincrement=True)

    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    status = Column(
        Enum(EventStatus, native_enum=False, values_callable=lambda x: [e.value for e in x]),
        default=EventStatus.DRAFT,
        nullable=False,
        index=True
    )

    scheduled_start_at = Column(DateTime, nullable=True)
    scheduled_end_at = Column(DateTime, nullable=True)

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

    tickets = relationship(
        "Ticket",
        back_populates="event",
        cascade="all, delete-orphan",
        lazy="select"
    )

    __table_args__ = (
        Index("ix_events_status_start", "status", "scheduled_start_at"),
        Index("ix_events_status_end", "status", "scheduled_end_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Event(id={self.id}, title='{self.title}', "
            f"status={self.status.value if self.status else None})>"
        )
