"""Decision API routes: journaling lifecycle and live change stream."""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from decision_memory.db import get_db
from decision_memory.dependencies import get_broadcaster, get_notifier, get_user_id
from decision_memory.schemas.decision import (
    CompleteRequest,
    DecisionCreate,
    DecisionCreated,
    DecisionResponse,
    DecisionSummary,
    PlanRequest,
)
from decision_memory.services import decisions as decision_service
from decision_memory.services.decisions import DecisionNotFoundError, DecisionValidationError
from decision_memory.services.notifier import Broadcaster, ChangeNotifier
from decision_memory.settings import settings

router = APIRouter(prefix="/api/decisions", tags=["decisions"])


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, DecisionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("", response_model=DecisionCreated, status_code=status.HTTP_202_ACCEPTED)
def create_decision(
    payload: DecisionCreate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """
    Record a decision. Plan drafting and similarity search run in the
    background; subscribe to the stream to learn when they land.
    """
    try:
        decision = decision_service.create_decision(db, user_id, payload.model_dump())
    except DecisionValidationError as e:
        raise _http_error(e)
    return DecisionCreated(id=decision.id)


@router.get("", response_model=List[DecisionSummary])
def list_decisions(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """List the caller's decisions, most recent first."""
    return [DecisionSummary.from_decision(d) for d in decision_service.list_decisions(db, user_id)]


@router.get("/{decision_id}", response_model=DecisionResponse)
def get_decision(
    decision_id: UUID,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Get one decision with its plan, references and insights."""
    try:
        decision = decision_service.fetch_decision(db, decision_id, owner_id=user_id)
    except DecisionNotFoundError as e:
        raise _http_error(e)
    return DecisionResponse.from_decision(decision)


@router.get("/{decision_id}/stream")
async def stream_decision(
    decision_id: UUID,
    request: Request,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    """
    Server-sent events for one decision.

    Emits ``connected`` once, ``updated`` whenever the decision changes
    (re-fetch it to see what changed) and heartbeat comments while idle.
    """
    try:
        await run_in_threadpool(decision_service.fetch_decision, db, decision_id, user_id)
    except DecisionNotFoundError as e:
        raise _http_error(e)

    async def events():
        stream = notifier.subscribe(decision_id, heartbeat=settings.SSE_HEARTBEAT_SECONDS)
        try:
            async for event in stream:
                if await request.is_disconnected():
                    break
                yield event.to_sse()
        finally:
            await stream.aclose()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{decision_id}/confirm", response_model=DecisionResponse)
def confirm_plan(
    decision_id: UUID,
    payload: PlanRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Confirm the (possibly edited) plan and start executing it."""
    try:
        decision = decision_service.confirm_plan(db, broadcaster, decision_id, payload.plan, owner_id=user_id)
    except (DecisionNotFoundError, DecisionValidationError) as e:
        raise _http_error(e)
    return DecisionResponse.from_decision(decision)


@router.put("/{decision_id}/plan", response_model=DecisionResponse)
def update_plan(
    decision_id: UUID,
    payload: PlanRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Replace the working plan, e.g. to mark steps done or skipped."""
    try:
        decision = decision_service.update_plan(db, broadcaster, decision_id, payload.plan, owner_id=user_id)
    except (DecisionNotFoundError, DecisionValidationError) as e:
        raise _http_error(e)
    return DecisionResponse.from_decision(decision)


@router.post("/{decision_id}/complete", response_model=DecisionResponse)
def complete_decision(
    decision_id: UUID,
    payload: CompleteRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Close the decision with its outcome; insight extraction runs in the background."""
    try:
        decision = decision_service.complete_decision(
            db, broadcaster, decision_id, payload.outcome, payload.reflection, owner_id=user_id
        )
    except (DecisionNotFoundError, DecisionValidationError) as e:
        raise _http_error(e)
    return DecisionResponse.from_decision(decision)


@router.post("/{decision_id}/archive", response_model=DecisionResponse)
def archive_decision(
    decision_id: UUID,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Abandon a decision without recording an outcome."""
    try:
        decision = decision_service.archive_decision(db, broadcaster, decision_id, owner_id=user_id)
    except (DecisionNotFoundError, DecisionValidationError) as e:
        raise _http_error(e)
    return DecisionResponse.from_decision(decision)


@router.delete("/{decision_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_decision(
    decision_id: UUID,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Delete a decision; it disappears from memory and similarity search."""
    try:
        decision_service.delete_decision(db, broadcaster, decision_id, owner_id=user_id)
    except DecisionNotFoundError as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
