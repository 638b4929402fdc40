"""
ScheduledTransition model: durable timers for the exact-time scheduler.

Each row is one "sleep until fire_at, then transition" request. Rows survive
restarts and are re-armed by ExactTimeScheduler.resume_pending(). A wake claims
its row with a conditional update on claim_token so a row is fired at most
once even when two processes resume it.

Design Rationale:
- expected_prior_status is the cancellation mechanism: a wake whose aggregate
  has moved on is skipped
- The unique constraint makes scheduling idempotent
"""

import enum
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Enum, Index, UniqueConstraint
)

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin


class TimerAction(str, enum.Enum):
    """What a timer does when it fires."""
    TRANSITION = "transition"
    FORFEIT_NO_SHOWS = "forfeit_no_shows"


class TimerStatus(str, enum.Enum):
    """
    Timer row status.

    - SCHEDULED: Waiting for fire_at
    - FIRING: Claimed by a wake, not yet finished
    - COMPLETED: Fired and the transition (or sweep) ran
    - SKIPPED: Stale (aggregate moved on) or lost the claim
    - FAILED: Guard rejection or persistence failure
    """
    SCHEDULED = "scheduled"
    FIRING = "firing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ScheduledTransition(Base, GuidMixin):
    """
    Durable timer row.

    Attributes:
        id: Primary key
        uuid/guid: tmr_xxx identifier
        action: TRANSITION or FORFEIT_NO_SHOWS
        aggregate_kind: "event" or "ticket"
        aggregate_id: Internal id of the aggregate row
        target_status: Status to transition to (TRANSITION only)
        expected_prior_status: Status the aggregate must still hold when the timer fires
        fire_at: When to fire (UTC)
        status: Timer status
        claim_token: Token of the wake that claimed the row
        attempts: Number of times the row has been claimed
        last_error: Error message of the last failed fire
        fired_at: When the row left FIRING
        created_at: Creation timestamp
    """

    __tablename__ = "scheduled_transitions"

    GUID_PREFIX = "tmr"

    id = Column(Integer, primary_key=True, autoincrement=True)

    action = Column(
        Enum(TimerAction, native_enum=False, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TimerAction.TRANSITION
    )

    aggregate_kind = Column(String(16), nullable=False)
    aggregate_id = Column(Integer, nullable=False)

    target_status = Column(String(32), nullable=False, default="")
    expected_prior_status = Column(String(32), nullable=True)

    fire_at = Column(DateTime, nullable=False)

    status = Column(
        Enum(TimerStatus, native_enum=False, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TimerStatus.SCHEDULED,
        index=True
    )

    claim_token = Column(String(64), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    fired_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "action", "aggregate_kind", "aggregate_id", "target_status", "fire_at",
            name="uq_scheduled_transitions_request"
        ),
        Index("ix_scheduled_transitions_status_fire_at", "status", "fire_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScheduledTransition({self.action.value if self.action else None} "
            f"{self.aggregate_kind}:{self.aggregate_id} -> {self.target_status} "
            f"at {self.fire_at}, {self.status.value if self.status else None})>"
        )
