"""Pydantic schemas for milestone and verifier administration."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ledgersync.common.schemas import OffsetPage


class MilestoneCreate(BaseModel):
    vault_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    deadline: datetime
    id: Optional[str] = None
    description: str = ""
    target_amount: str = "0"
    approval_policy: str = Field("all", pattern=r"^(all|majority)$")
    verifier_ids: list[str] = []


class AssignmentResponse(BaseModel):
    verifier_id: str
    verifier_active: bool
    decision: str
    decided_at: Optional[datetime] = None


class MilestoneResponse(BaseModel):
    id: str
    vault_id: str
    title: str
    description: str
    target_amount: str
    status: str
    approval_policy: str
    deadline: datetime
    finalized_at: Optional[datetime] = None
    verifiers: list[AssignmentResponse] = []
    created_at: datetime


class MilestoneList(OffsetPage):
    items: list[MilestoneResponse]


class EvaluationResponse(BaseModel):
    milestone_id: str
    status: str
    total: int
    approved: int
    rejected: int
    pending: int
    reason: str


class VerifierCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    name: str = ""


class VerifierResponse(BaseModel):
    id: str
    name: str
    active: bool
    deactivated_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AssignVerifierRequest(BaseModel):
    verifier_id: str = Field(..., min_length=1)


class SweepResponse(BaseModel):
    expired: list[str]
