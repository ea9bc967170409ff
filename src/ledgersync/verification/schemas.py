"""Pydantic schemas for verification submissions."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ledgersync.common.schemas import OffsetPage


class EvidenceIn(BaseModel):
    mime_type: str = Field(..., min_length=1)
    data: str = Field(..., min_length=1)

    @field_validator("mime_type", "data")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class ValidationSubmissionCreate(BaseModel):
    vault_id: str = Field(..., min_length=1)
    milestone_id: str = Field(..., min_length=1)
    verdict: str = Field(..., pattern=r"^(approved|rejected)$")
    reason: Optional[str] = None
    evidence: EvidenceIn

    @field_validator("vault_id", "milestone_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class EvidenceDescriptor(BaseModel):
    mime_type: str
    size_bytes: int
    encrypted: bool
    algorithm: str
    key_id: str


class ValidationSubmissionResponse(BaseModel):
    id: str
    idempotency_key: str
    vault_id: str
    milestone_id: str
    verifier_id: str
    verdict: str
    reason: Optional[str] = None
    evidence: EvidenceDescriptor
    milestone_status: Optional[str] = None
    replayed: bool = False
    created_at: datetime


class ValidationSubmissionList(OffsetPage):
    items: list[ValidationSubmissionResponse]
