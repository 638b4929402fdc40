"""
Custom exceptions for service layer.

Provides specific exception types for lifecycle errors that can be
translated to appropriate HTTP responses and counted in job run summaries.
"""

from typing import Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    code = "not_found"

    def __init__(self, resource: str, identifier: any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class TransitionError(ServiceError):
    """
    Base class for rejected or failed status transitions.

    Every subclass carries the aggregate it concerns, the edge that was
    attempted and a stable ``code`` for API responses and run summaries.
    """

    code = "transition_error"

    def __init__(
        self,
        message: str,
        aggregate_kind: str,
        aggregate_id: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
    ):
        self.message = message
        self.aggregate_kind = aggregate_kind
        self.aggregate_id = aggregate_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)


class TerminalStateError(TransitionError):
    """Raised when the aggregate is already in a terminal status."""

    code = "terminal_state"

    def __init__(self, aggregate_kind: str, aggregate_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Cannot transition {aggregate_kind} {aggregate_id}: "
            f"'{from_status}' is a terminal status",
            aggregate_kind, aggregate_id, from_status, to_status
        )


class InvalidTransitionError(TransitionError):
    """Raised when the requested edge is not in the rule table."""

    code = "invalid_transition"

    def __init__(self, aggregate_kind: str, aggregate_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Invalid transition for {aggregate_kind} {aggregate_id}: "
            f"{from_status} -> {to_status}",
            aggregate_kind, aggregate_id, from_status, to_status
        )


class GuardRejectedError(TransitionError):
    """Raised when the guard for an edge refuses the transition."""

    code = "guard_rejected"

    def __init__(
        self,
        aggregate_kind: str,
        aggregate_id: str,
        from_status: str,
        to_status: str,
        reason: str,
    ):
        self.reason = reason
        super().__init__(reason, aggregate_kind, aggregate_id, from_status, to_status)


class ConcurrentModificationError(TransitionError):
    """Raised when the conditional status update matched no row."""

    code = "concurrent_modification"

    def __init__(self, aggregate_kind: str, aggregate_id: str, from_status: str, to_status: str):
        super().__init__(
            f"{aggregate_kind} {aggregate_id} was modified concurrently "
            f"(expected status '{from_status}')",
            aggregate_kind, aggregate_id, from_status, to_status
        )


class PersistenceError(TransitionError):
    """Raised when the datastore fails while applying a transition."""

    code = "persistence_failure"

    def __init__(
        self,
        aggregate_kind: str,
        aggregate_id: str,
        from_status: Optional[str],
        to_status: Optional[str],
        detail: str,
    ):
        self.detail = detail
        super().__init__(
            f"Failed to persist transition for {aggregate_kind} {aggregate_id}: {detail}",
            aggregate_kind, aggregate_id, from_status, to_status
        )


# Failures a redundant trigger produces when another path already did the work
REDUNDANT_TRANSITION_ERRORS = (
    InvalidTransitionError,
    TerminalStateError,
    ConcurrentModificationError,
)
