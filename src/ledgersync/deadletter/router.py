"""Dead-letter queue API router."""

from fastapi import APIRouter, Depends, HTTPException, Query

from ledgersync.common.exceptions import DeadLetterNotFoundError, DeadLetterStateError
from ledgersync.common.security import require_api_key
from ledgersync.deadletter.models import DEAD_LETTER_STATUSES
from ledgersync.deadletter.schemas import (
    DeadLetterMetrics,
    DeadLetterResponse,
    ReprocessResponse,
)

router = APIRouter()


def _get_service():
    from ledgersync.deps import get_dead_letter_service
    return get_dead_letter_service()


def _get_processor():
    from ledgersync.deps import get_event_processor
    return get_event_processor()


def _get_db():
    from ledgersync.deps import get_db
    return get_db()


@router.get("/dlq", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    job_type: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    if status is not None and status not in DEAD_LETTER_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid status: {status}. Valid statuses: {list(DEAD_LETTER_STATUSES)}",
        )
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entries = await svc.list_entries(
            session, job_type=job_type, status=status, limit=limit, offset=offset,
        )
        return [DeadLetterResponse.model_validate(e) for e in entries]


@router.get("/dlq/metrics", response_model=DeadLetterMetrics)
async def dead_letter_metrics(_=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return DeadLetterMetrics(**await svc.metrics(session))


@router.get("/dlq/{entry_id}", response_model=DeadLetterResponse)
async def get_dead_letter(entry_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entry = await svc.get(session, entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Dead-letter entry not found")
        return DeadLetterResponse.model_validate(entry)


@router.post("/dlq/{entry_id}/discard", response_model=DeadLetterResponse)
async def discard_dead_letter(entry_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entry = await svc.discard(session, entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Dead-letter entry not found")
        return DeadLetterResponse.model_validate(entry)


@router.post("/dlq/{entry_id}/reprocess", response_model=ReprocessResponse)
async def reprocess_dead_letter(entry_id: str, _=Depends(require_api_key)):
    processor = _get_processor()
    try:
        outcome = await processor.reprocess_dead_letter(entry_id)
    except DeadLetterNotFoundError:
        raise HTTPException(status_code=404, detail="Dead-letter entry not found")
    except DeadLetterStateError as e:
        raise HTTPException(status_code=409, detail=e.message)

    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entry = await svc.get(session, entry_id)
        return ReprocessResponse(
            entry=DeadLetterResponse.model_validate(entry),
            event_id=outcome.event_id,
            outcome=outcome.status,
            error=outcome.error,
        )
