"""
Lifecycle API endpoints.

Thin HTTP surface over LifecycleService:
- POST /lifecycle/{kind}/{guid}/transitions: request a transition
- GET  /lifecycle/{guid}/status: current status and valid next statuses
- GET  /lifecycle/{guid}/history: audit history

Design:
- Endpoints run on the event loop because they share the runtime's
  store handle with the scheduler and the periodic jobs
- Lifecycle errors map to HTTP statuses:
    NotFound -> 404
    TerminalState / InvalidTransition / ConcurrentModification -> 409
    GuardRejected -> 422
    PersistenceFailure -> 503
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from backend.src.schemas.lifecycle import (
    ErrorResponse,
    HistoryResponse,
    StatusInfoResponse,
    StatusTransitionResponse,
    TransitionRequest,
    TransitionResponse,
)
from backend.src.services.exceptions import (
    ConcurrentModificationError,
    GuardRejectedError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    TerminalStateError,
    TransitionError,
)
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.transition_rules import AggregateKind
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/lifecycle",
    tags=["Lifecycle"],
)

ERROR_STATUS_CODES = {
    TerminalStateError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    GuardRejectedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ============================================================================
# Dependencies
# ============================================================================

def get_lifecycle_service(request: Request) -> LifecycleService:
    """Get the lifecycle facade from the application's runtime."""
    runtime = getattr(request.app.state, "lifecycle_runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Lifecycle runtime is not initialized"
        )
    return runtime.lifecycle


def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": e.code, "message": str(e)}
    )


def _transition_failed(e: TransitionError) -> HTTPException:
    detail = {
        "code": e.code,
        "message": e.message,
        "aggregate_kind": e.aggregate_kind,
        "aggregate_id": e.aggregate_id,
        "from_status": e.from_status,
        "to_status": e.to_status,
    }
    if isinstance(e, GuardRejectedError):
        detail["reason"] = e.reason
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(type(e), status.HTTP_409_CONFLICT),
        detail=detail
    )


# ============================================================================
# Endpoints
# ============================================================================

@router.post(
    "/{kind}/{guid}/transitions",
    response_model=TransitionResponse,
    summary="Transition an event or ticket",
    responses={
        404: {"model": ErrorResponse, "description": "Aggregate not found"},
        409: {"model": ErrorResponse, "description": "Terminal status, illegal edge or concurrent modification"},
        422: {"model": ErrorResponse, "description": "Guard rejected the transition"},
        503: {"model": ErrorResponse, "description": "Datastore failure, safe to retry"},
    },
)
async def transition_aggregate(
    kind: AggregateKind,
    guid: str,
    request: TransitionRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle_service),
) -> TransitionResponse:
    """
    Request a status transition.

    Path Parameters:
        kind: "event" or "ticket"
        guid: Aggregate GUID (evt_xxx / tkt_xxx)

    Raises:
        404: Aggregate not found
        409: Terminal status, illegal edge or concurrent modification
        422: Guard rejected the transition (reason in the body)
        503: Datastore failure, safe to retry
    """
    try:
        result = lifecycle.transition(kind, guid, request.target_status, request.to_context())
    except NotFoundError as e:
        raise _not_found(e)
    except TransitionError as e:
        logger.info(f"Transition request for {kind.value} {guid} rejected: {e.code}")
        raise _transition_failed(e)

    return TransitionResponse.from_result(result)


@router.get(
    "/{guid}/status",
    response_model=StatusInfoResponse,
    summary="Get an aggregate's status",
)
async def get_status(
    guid: str,
    lifecycle: LifecycleService = Depends(get_lifecycle_service),
) -> StatusInfoResponse:
    """Current status, valid next statuses and lifecycle fields of an event or ticket."""
    try:
        return StatusInfoResponse(**lifecycle.get_status_info(guid))
    except NotFoundError as e:
        raise _not_found(e)


@router.get(
    "/{guid}/history",
    response_model=HistoryResponse,
    summary="Get an aggregate's transition history",
)
async def get_history(
    guid: str,
    lifecycle: LifecycleService = Depends(get_lifecycle_service),
) -> HistoryResponse:
    try:
        records = lifecycle.history(guid)
    except NotFoundError as e:
        raise _not_found(e)

    items = [StatusTransitionResponse.from_model(r) for r in records]
    return HistoryResponse(aggregate_id=guid, items=items, total=len(items))
