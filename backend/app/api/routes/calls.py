import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.api.deps import get_call_finalizer, get_live_call_registry
from app.core.settings import get_settings
from app.crud import call as call_crud
from app.db.session import get_db
from app.schemas.calls import CallList, CallOut, CallStatusUpdate, LiveCallList
from app.services.broadcast import KEEPALIVE_FRAME, format_sse
from app.services.finalization import AnalysisError, CallFinalizer, completed_call_from_row
from app.services.live_calls import LiveCallRegistry

router = APIRouter()


@router.get("/stream")
async def stream_calls(
    request: Request,
    registry: LiveCallRegistry = Depends(get_live_call_registry),
) -> StreamingResponse:
    """Server-sent events: a ``full-state`` snapshot, then every change."""
    keepalive = get_settings().stream_keepalive_seconds
    subscription = registry.subscribe()

    async def event_stream():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield KEEPALIVE_FRAME
                    continue
                if event is None:
                    break
                yield format_sse(event)
        finally:
            registry.unsubscribe(subscription)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/live", response_model=LiveCallList)
def list_live_calls(
    registry: LiveCallRegistry = Depends(get_live_call_registry),
) -> LiveCallList:
    items = registry.get_live()
    return LiveCallList(items=items, total=len(items))


@router.get("/history", response_model=CallList)
def list_call_history(
    limit: int = 100,
    db: Session = Depends(get_db),
) -> CallList:
    rows = call_crud.list_completed_calls(db, limit=min(max(limit, 1), 100))
    return CallList(items=[CallOut.model_validate(row) for row in rows], total=len(rows))


@router.get("/{call_id}", response_model=CallOut)
def get_call(
    call_id: str,
    db: Session = Depends(get_db),
) -> CallOut:
    row = call_crud.get_call_with_patient(db, call_id)
    if not row:
        raise HTTPException(status_code=404, detail="Call not found")
    return CallOut.model_validate(row)


@router.patch("/{call_id}", response_model=CallOut)
def update_call_status(
    call_id: str,
    payload: CallStatusUpdate,
    db: Session = Depends(get_db),
    registry: LiveCallRegistry = Depends(get_live_call_registry),
) -> CallOut:
    call = call_crud.get_call(db, call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    call_crud.update_call_status(db, call, payload.status)

    record = registry.get_completed_call(call_id)
    if record is not None:
        registry.replace_completed(record.model_copy(update={"status": payload.status}))
    return CallOut.model_validate(call_crud.get_call_with_patient(db, call_id))


@router.post("/{call_id}/analyze", response_model=CallOut)
async def analyze_call(
    call_id: str,
    finalizer: CallFinalizer = Depends(get_call_finalizer),
    registry: LiveCallRegistry = Depends(get_live_call_registry),
) -> CallOut:
    """Re-run the structured extraction for a stored call."""
    try:
        row = await finalizer.reanalyze(call_id)
    except AnalysisError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=404, detail="Call not found")

    if registry.is_completed(call_id):
        registry.replace_completed(completed_call_from_row(row))
    return CallOut.model_validate(row)
