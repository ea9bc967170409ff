"""Shared Pydantic schemas for ledgersync."""

from typing import Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"] = "ok"
    version: str = "0.1.0"
    service: str = "ledgersync"
    database: Literal["ok", "unavailable"] = "ok"


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: str = ""


class OffsetPage(BaseModel):
    """Envelope for offset-paginated listings; subclasses add ``items``."""

    total: int
    limit: int
    offset: int
