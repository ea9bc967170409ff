"""Pydantic schemas for the dead-letter queue API."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class DeadLetterResponse(BaseModel):
    id: str
    job_type: str
    payload: dict[str, Any] = {}
    error_message: str
    stack_trace: Optional[str] = None
    retry_count: int
    status: str
    first_failed_at: datetime
    last_failed_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DeadLetterMetrics(BaseModel):
    total: int
    pending: int
    reprocessing: int
    discarded: int
    by_job_type: dict[str, int] = {}


class ReprocessResponse(BaseModel):
    entry: DeadLetterResponse
    event_id: str
    outcome: str
    error: Optional[str] = None
