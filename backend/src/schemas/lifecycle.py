"""
Pydantic schemas for the lifecycle API.

Provides data validation and serialization for:
- Transition requests (target status plus per-edge payload)
- Transition results
- Status introspection
- Audit history

Design:
- Aggregate ids are GUIDs (evt_xxx / tkt_xxx)
- Timestamps are accepted with or without an offset and stored as naive UTC
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.src.services.transition_context import StakeData, TransitionContext, SYSTEM_ACTOR


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Request Schemas
# ============================================================================

class StakeRequest(BaseModel):
    """Stake metadata for approved -> staked."""

    amount: Optional[str] = Field(default=None, description="Amount in the currency's smallest unit")
    currency: Optional[str] = Field(default=None, max_length=16)
    tx_hash: Optional[str] = Field(default=None, max_length=128, description="Stake transaction hash")
    wallet_address: Optional[str] = Field(default=None, max_length=128)


class TransitionRequest(BaseModel):
    """
    Request to transition an aggregate.

    Fields:
        target_status: Status to move to (required)
        actor_id: Acting user; omitted means the system
        reason: Free-text reason recorded in the audit log
        metadata: Arbitrary metadata recorded in the audit log
        stake: Stake metadata (approved -> staked)
        refund_tx_hash: Refund transaction hash (staked -> refunded)
        scheduled_start_at / scheduled_end_at: Scheduled window (draft -> published)
    """

    target_status: str = Field(..., min_length=1, max_length=32)
    actor_id: Optional[str] = Field(default=None, max_length=200)
    reason: Optional[str] = Field(default=None, max_length=1000)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    stake: Optional[StakeRequest] = None
    refund_tx_hash: Optional[str] = Field(default=None, max_length=128)
    scheduled_start_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "target_status": "staked",
                "actor_id": "42",
                "reason": "Stake confirmed on chain",
                "stake": {
                    "amount": "10000000",
                    "currency": "USDC",
                    "tx_hash": "0x9f2c...",
                    "wallet_address": "0x12ab...",
                },
            }
        }
    }

    @field_validator("target_status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("scheduled_start_at", "scheduled_end_at")
    @classmethod
    def normalize_instant(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "TransitionRequest":
        if (
            self.scheduled_start_at is not None
            and self.scheduled_end_at is not None
            and self.scheduled_end_at < self.scheduled_start_at
        ):
            raise ValueError("scheduled_end_at must not be before scheduled_start_at")
        return self

    def to_context(self) -> TransitionContext:
        """Build the service-layer TransitionContext."""
        stake = None
        if self.stake is not None:
            stake = StakeData(
                amount=self.stake.amount,
                currency=self.stake.currency,
                tx_hash=self.stake.tx_hash,
                wallet_address=self.stake.wallet_address,
            )
        return TransitionContext(
            triggered_by=f"user:{self.actor_id}" if self.actor_id else SYSTEM_ACTOR,
            reason=self.reason,
            metadata=dict(self.metadata),
            stake=stake,
            refund_tx_hash=self.refund_tx_hash,
            scheduled_start_at=self.scheduled_start_at,
            scheduled_end_at=self.scheduled_end_at,
        )


# ============================================================================
# Response Schemas
# ============================================================================

class TransitionResponse(BaseModel):
    """Result of a successful transition."""

    aggregate_kind: str
    aggregate_id: str
    previous_status: str
    new_status: str
    transitioned_at: datetime
    audit_id: str = Field(..., description="Audit record GUID (stx_xxx)")
    triggered_by: str

    @classmethod
    def from_result(cls, result) -> "TransitionResponse":
        return cls(
            aggregate_kind=result.aggregate_kind.value,
            aggregate_id=result.aggregate_id,
            previous_status=result.previous_status.value,
            new_status=result.new_status.value,
            transitioned_at=result.transitioned_at,
            audit_id=result.audit_guid,
            triggered_by=result.triggered_by,
        )


class StatusInfoResponse(BaseModel):
    """Current status of an aggregate and where it can go next."""

    aggregate_kind: str
    aggregate_id: str
    current_status: str
    valid_next_statuses: List[str]
    is_terminal: bool
    description: str
    lifecycle_fields: Dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "example": {
                "aggregate_kind": "ticket",
                "aggregate_id": "tkt_01hgw2bbg0000000000000001",
                "current_status": "staked",
                "valid_next_statuses": ["checked_in", "refunded", "forfeited"],
                "is_terminal": False,
                "description": "Stake deposited, guest can check in",
                "lifecycle_fields": {"stake_amount": "10000000", "stake_currency": "USDC"},
            }
        }
    }


class StatusTransitionResponse(BaseModel):
    """One audit record."""

    guid: str = Field(..., description="Audit record GUID (stx_xxx)")
    from_status: str
    to_status: str
    triggered_by: str
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    transitioned_at: datetime

    @classmethod
    def from_model(cls, record) -> "StatusTransitionResponse":
        return cls(
            guid=record.guid,
            from_status=record.from_status,
            to_status=record.to_status,
            triggered_by=record.triggered_by,
            reason=record.reason,
            metadata=record.metadata_json or {},
            transitioned_at=record.transitioned_at,
        )


class HistoryResponse(BaseModel):
    """Audit history of an aggregate, oldest first."""

    aggregate_id: str
    items: List[StatusTransitionResponse]
    total: int


class ErrorDetail(BaseModel):
    """Body of a lifecycle error response."""

    code: str
    message: str
    aggregate_kind: Optional[str] = None
    aggregate_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error envelope returned for rejected transitions."""

    detail: ErrorDetail
