"""
Transition request context.

Carries who asked for a transition and why, plus the per-edge payload some
guards and side fields need (stake metadata, refund hash, scheduled window).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

SYSTEM_ACTOR = "system"


@dataclass
class StakeData:
    """Stake metadata supplied when a ticket enters STAKED."""
    amount: Optional[str] = None
    currency: Optional[str] = None
    tx_hash: Optional[str] = None
    wallet_address: Optional[str] = None


@dataclass
class TransitionContext:
    """
    Context of a transition request.

    Attributes:
        triggered_by: "system" or "user:<id>"
        reason: Free-text reason recorded in the audit log
        metadata: Arbitrary metadata recorded in the audit log
        stake: Stake metadata (approved -> staked)
        refund_tx_hash: Refund transaction (staked -> refunded)
        scheduled_start_at: Scheduled start (draft -> published)
        scheduled_end_at: Scheduled end (draft -> published)
    """
    triggered_by: str = SYSTEM_ACTOR
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stake: Optional[StakeData] = None
    refund_tx_hash: Optional[str] = None
    scheduled_start_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None

    @classmethod
    def system(cls, reason: Optional[str] = None, **metadata: Any) -> "TransitionContext":
        """Context for engine-initiated transitions (scheduler, sweeps, reconciliation)."""
        return cls(triggered_by=SYSTEM_ACTOR, reason=reason, metadata=dict(metadata))

    @classmethod
    def for_user(cls, user_id: str, reason: Optional[str] = None, **kwargs: Any) -> "TransitionContext":
        return cls(triggered_by=f"user:{user_id}", reason=reason, **kwargs)
