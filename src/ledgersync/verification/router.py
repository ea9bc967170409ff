"""Verification submission API router."""

from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from ledgersync.common.exceptions import (
    DecisionAlreadyRecordedError,
    IdempotencyConflictError,
    InvalidSubmissionError,
    LedgerSyncError,
    MilestoneNotFoundError,
    MissingIdempotencyKeyError,
    VerifierNotAssignedError,
)
from ledgersync.common.schemas import ErrorResponse
from ledgersync.common.security import require_api_key, require_verifier
from ledgersync.verification.schemas import (
    EvidenceDescriptor,
    ValidationSubmissionList,
    ValidationSubmissionResponse,
)

router = APIRouter()

_ERROR_STATUS: dict[type[LedgerSyncError], int] = {
    MissingIdempotencyKeyError: 400,
    InvalidSubmissionError: 400,
    VerifierNotAssignedError: 403,
    MilestoneNotFoundError: 404,
    IdempotencyConflictError: 409,
    DecisionAlreadyRecordedError: 409,
}


def _get_service():
    from ledgersync.deps import get_submission_service
    return get_submission_service()


def _get_db():
    from ledgersync.deps import get_db
    return get_db()


def _to_response(record, milestone_status=None, replayed=False) -> ValidationSubmissionResponse:
    return ValidationSubmissionResponse(
        id=record.id,
        idempotency_key=record.idempotency_key,
        vault_id=record.vault_id,
        milestone_id=record.milestone_id,
        verifier_id=record.verifier_id,
        verdict=record.verdict,
        reason=record.reason,
        evidence=EvidenceDescriptor(
            mime_type=record.evidence_mime_type,
            size_bytes=record.evidence_size_bytes,
            encrypted=record.evidence_encrypted,
            algorithm=record.evidence_algorithm,
            key_id=record.evidence_key_id,
        ),
        milestone_status=milestone_status,
        replayed=replayed,
        created_at=record.created_at,
    )


@router.post(
    "/validations",
    response_model=ValidationSubmissionResponse,
    status_code=201,
    responses={
        200: {"description": "Replay of an earlier submission with the same key"},
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def submit_validation(
    response: Response,
    payload: Any = Body(None),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    verifier_id: str = Depends(require_verifier),
):
    svc = _get_service()
    db = _get_db()
    try:
        result = await svc.submit_once(db, idempotency_key, payload, verifier_id)
    except LedgerSyncError as e:
        status = _ERROR_STATUS.get(type(e))
        if status is None:
            raise
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(error=e.message, code=e.code).model_dump(),
        )

    if result.replayed:
        response.status_code = 200
    return _to_response(result.record, result.milestone_status, result.replayed)


@router.get("/validations", response_model=ValidationSubmissionList)
async def list_validations(
    milestone_id: str | None = Query(None),
    verifier_id: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    from ledgersync.common.config import get_settings

    settings = get_settings()
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        records, total = await svc.list_submissions(
            session, milestone_id=milestone_id, verifier_id=verifier_id,
            limit=limit, offset=offset,
        )
        return ValidationSubmissionList(
            items=[_to_response(r) for r in records],
            total=total,
            limit=limit,
            offset=offset,
        )


@router.get("/validations/{submission_id}", response_model=ValidationSubmissionResponse)
async def get_validation(submission_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        record = await svc.get_submission(session, submission_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Submission not found")
        return _to_response(record)
