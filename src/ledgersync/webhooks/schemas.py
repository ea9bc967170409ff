"""Request and response bodies for webhook subscriptions."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, Field

from ledgersync.webhooks.models import VALID_EVENT_TYPES


def _check_url(url: str) -> str:
    if not url.startswith(("http://", "https://")):
        raise ValueError("Webhook URL must use http or https")
    return url


def _check_event_types(event_types: list[str]) -> list[str]:
    unknown = sorted(set(event_types) - VALID_EVENT_TYPES)
    if unknown:
        raise ValueError(
            f"Invalid event types {unknown}. Valid types: {sorted(VALID_EVENT_TYPES)}"
        )
    return event_types


WebhookUrl = Annotated[str, Field(max_length=2048), AfterValidator(_check_url)]
EventTypeList = Annotated[list[str], AfterValidator(_check_event_types)]


class WebhookEndpointCreate(BaseModel):
    url: WebhookUrl
    secret: str = Field(..., min_length=16)
    event_types: EventTypeList = []
    description: str = ""
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    timeout_seconds: int = Field(10, ge=1, le=60)


class WebhookEndpointUpdate(BaseModel):
    url: Optional[WebhookUrl] = None
    secret: Optional[str] = Field(None, min_length=16)
    event_types: Optional[EventTypeList] = None
    description: Optional[str] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=60)
    status: Optional[Literal["active", "paused", "disabled"]] = None


class WebhookEndpointResponse(BaseModel):
    """Endpoint as returned by the API; the signing secret is never echoed."""

    id: str
    url: str
    description: str
    event_types: list[str] = []
    status: str
    max_retries: int
    timeout_seconds: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookDeliveryResponse(BaseModel):
    id: str
    endpoint_id: str
    event_type: str
    milestone_id: Optional[str] = None
    payload: dict[str, Any] = {}
    status: str
    attempts: int
    last_response_code: Optional[int] = None
    last_error: Optional[str] = None
    dead_letter_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
