"""
StatusTransition model: the append-only audit ledger.

One row per successful transition. Rows are never updated or deleted; the
reconciliation loop reads them to learn *when* an aggregate entered a status.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin


class StatusTransition(Base, GuidMixin):
    """
    Immutable audit record of a status transition.

    Attributes:
        id: Primary key
        uuid/guid: stx_xxx identifier
        aggregate_kind: "event" or "ticket"
        aggregate_id: Internal id of the aggregate row
        from_status: Status before the transition
        to_status: Status after the transition
        triggered_by: "system" or "user:<id>"
        reason: Free-text reason
        metadata_json: Arbitrary context metadata plus type-specific side fields
        transitioned_at: When the transition was applied (UTC)
    """

    __tablename__ = "status_transitions"

    GUID_PREFIX = "stx"

    id = Column(Integer, primary_key=True, autoincrement=True)

    aggregate_kind = Column(String(16), nullable=False)
    aggregate_id = Column(Integer, nullable=False)

    from_status = Column(String(32), nullable=False)
    to_status = Column(String(32), nullable=False)

    triggered_by = Column(String(255), nullable=False, default="system")
    reason = Column(Text, nullable=True)
    metadata_json = Column(
        JSONB().with_variant(JSON(), "sqlite"),
        nullable=True
    )

    transitioned_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index(
            "ix_status_transitions_aggregate",
            "aggregate_kind", "aggregate_id", "transitioned_at"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<StatusTransition({self.aggregate_kind}:{self.aggregate_id} "
            f"{self.from_status}->{self.to_status})>"
        )
