"""
Service layer for lifecycle business logic.

Only model-independent names are re-exported here; the models package
imports backend.src.services.guid while it is still initializing, so
service classes are imported from their own modules.
"""

from backend.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    TransitionError,
    TerminalStateError,
    InvalidTransitionError,
    GuardRejectedError,
    ConcurrentModificationError,
    PersistenceError,
)
from backend.src.services.guid import GuidService

__all__ = [
    "ServiceError",
    "NotFoundError",
    "TransitionError",
    "TerminalStateError",
    "InvalidTransitionError",
    "GuardRejectedError",
    "ConcurrentModificationError",
    "PersistenceError",
    "GuidService",
]
