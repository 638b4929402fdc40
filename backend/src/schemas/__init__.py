"""
Pydantic schemas for API request/response validation.

This module exports all schema classes for use in API endpoints.
"""

from backend.src.schemas.lifecycle import (
    StakeRequest,
    TransitionRequest,
    TransitionResponse,
    StatusInfoResponse,
    StatusTransitionResponse,
    HistoryResponse,
    ErrorDetail,
    ErrorResponse,
)

__all__ = [
    "StakeRequest",
    "TransitionRequest",
    "TransitionResponse",
    "StatusInfoResponse",
    "StatusTransitionResponse",
    "HistoryResponse",
    "ErrorDetail",
    "ErrorResponse",
]
