"""Milestone and verifier administration API router."""

from fastapi import APIRouter, Depends, HTTPException, Query

from ledgersync.common.exceptions import (
    MilestoneNotFoundError,
    VaultNotFoundError,
    VerifierNotFoundError,
)
from ledgersync.common.security import require_api_key
from ledgersync.milestones.schemas import (
    AssignmentResponse,
    AssignVerifierRequest,
    EvaluationResponse,
    MilestoneCreate,
    MilestoneList,
    MilestoneResponse,
    SweepResponse,
    VerifierCreate,
    VerifierResponse,
)

router = APIRouter()


def _get_service():
    from ledgersync.deps import get_milestone_service
    return get_milestone_service()


def _get_db():
    from ledgersync.deps import get_db
    return get_db()


async def _milestone_response(svc, session, milestone) -> MilestoneResponse:
    assignments = await svc.list_assignments(session, milestone.id)
    return MilestoneResponse(
        id=milestone.id,
        vault_id=milestone.vault_id,
        title=milestone.title,
        description=milestone.description,
        target_amount=milestone.target_amount,
        status=milestone.status,
        approval_policy=milestone.approval_policy,
        deadline=milestone.deadline,
        finalized_at=milestone.finalized_at,
        verifiers=[
            AssignmentResponse(
                verifier_id=a.verifier_id,
                verifier_active=v.active,
                decision=a.decision,
                decided_at=a.decided_at,
            )
            for a, v in assignments
        ],
        created_at=milestone.created_at,
    )


# ── Milestones ──

@router.post("/milestones", response_model=MilestoneResponse, status_code=201)
async def create_milestone(body: MilestoneCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            if body.id and await svc.get_milestone(session, body.id) is not None:
                raise HTTPException(status_code=409, detail="Milestone already exists")
            milestone = await svc.create_milestone(
                session,
                vault_id=body.vault_id,
                title=body.title,
                deadline=body.deadline,
                milestone_id=body.id,
                description=body.description,
                target_amount=body.target_amount,
                approval_policy=body.approval_policy,
                verifier_ids=body.verifier_ids,
            )
            return await _milestone_response(svc, session, milestone)
    except VaultNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/milestones", response_model=MilestoneList)
async def list_milestones(
    vault_id: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        milestones, total = await svc.list_milestones(
            session, vault_id=vault_id, status=status, limit=limit, offset=offset,
        )
        return MilestoneList(
            items=[await _milestone_response(svc, session, m) for m in milestones],
            total=total,
            limit=limit,
            offset=offset,
        )


@router.post("/milestones/sweep", response_model=SweepResponse)
async def sweep_expired_milestones(_=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return SweepResponse(expired=await svc.sweep_expired(session))


@router.get("/milestones/{milestone_id}", response_model=MilestoneResponse)
async def get_milestone(milestone_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        milestone = await svc.get_milestone(session, milestone_id)
        if milestone is None:
            raise HTTPException(status_code=404, detail="Milestone not found")
        return await _milestone_response(svc, session, milestone)


@router.post("/milestones/{milestone_id}/verifiers", response_model=MilestoneResponse)
async def assign_verifier(
    milestone_id: str,
    body: AssignVerifierRequest,
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            await svc.assign_verifier(session, milestone_id, body.verifier_id)
            milestone = await svc.get_milestone(session, milestone_id)
            return await _milestone_response(svc, session, milestone)
    except MilestoneNotFoundError:
        raise HTTPException(status_code=404, detail="Milestone not found")
    except VerifierNotFoundError:
        raise HTTPException(status_code=404, detail="Verifier not found")


@router.post("/milestones/{milestone_id}/evaluate", response_model=EvaluationResponse)
async def evaluate_milestone(milestone_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            agg = await svc.evaluate(session, milestone_id)
    except MilestoneNotFoundError:
        raise HTTPException(status_code=404, detail="Milestone not found")
    return EvaluationResponse(
        milestone_id=milestone_id,
        status=agg.status,
        total=agg.total,
        approved=agg.approved,
        rejected=agg.rejected,
        pending=agg.pending,
        reason=agg.reason,
    )


# ── Verifiers ──

@router.post("/verifiers", response_model=VerifierResponse, status_code=201)
async def create_verifier(body: VerifierCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        if await svc.get_verifier(session, body.id) is not None:
            raise HTTPException(status_code=409, detail="Verifier already exists")
        verifier = await svc.ensure_verifier(session, body.id, name=body.name)
        return VerifierResponse.model_validate(verifier)


@router.get("/verifiers", response_model=list[VerifierResponse])
async def list_verifiers(
    active: bool | None = Query(None),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        verifiers = await svc.list_verifiers(session, active=active)
        return [VerifierResponse.model_validate(v) for v in verifiers]


@router.post("/verifiers/{verifier_id}/deactivate", response_model=VerifierResponse)
async def deactivate_verifier(verifier_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            verifier = await svc.deactivate_verifier(session, verifier_id)
            return VerifierResponse.model_validate(verifier)
    except VerifierNotFoundError:
        raise HTTPException(status_code=404, detail="Verifier not found")
