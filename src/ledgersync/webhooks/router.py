"""Webhook subscription and delivery API router."""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from ledgersync.common.security import require_api_key
from ledgersync.webhooks.schemas import (
    WebhookDeliveryResponse,
    WebhookEndpointCreate,
    WebhookEndpointResponse,
    WebhookEndpointUpdate,
)

router = APIRouter(dependencies=[Depends(require_api_key)])

EndpointStatus = Literal["active", "paused", "disabled"]
DeliveryStatus = Literal["pending", "success", "failed"]


def _get_service():
    from ledgersync.deps import get_webhook_service
    return get_webhook_service()


def _get_db():
    from ledgersync.deps import get_db
    return get_db()


def _endpoint_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Webhook endpoint not found")


@router.post("/webhooks", response_model=WebhookEndpointResponse, status_code=201)
async def subscribe(body: WebhookEndpointCreate):
    svc = _get_service()
    async with _get_db().get_session() as session:
        endpoint = await svc.create_endpoint(session, **body.model_dump())
        return WebhookEndpointResponse.model_validate(endpoint)


@router.get("/webhooks", response_model=list[WebhookEndpointResponse])
async def list_subscriptions(status: EndpointStatus | None = Query(None)):
    svc = _get_service()
    async with _get_db().get_session() as session:
        return [
            WebhookEndpointResponse.model_validate(ep)
            for ep in await svc.list_endpoints(session, status=status)
        ]


# Declared before /webhooks/{endpoint_id} so "deliveries" is not taken for an id
@router.get("/webhooks/deliveries", response_model=list[WebhookDeliveryResponse])
async def list_deliveries(
    status: DeliveryStatus | None = Query(None),
    event_type: str | None = Query(None),
    milestone_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Deliveries across every endpoint, newest first."""
    svc = _get_service()
    async with _get_db().get_session() as session:
        deliveries = await svc.get_deliveries(
            session, event_type=event_type, status=status, milestone_id=milestone_id,
            limit=limit, offset=offset,
        )
        return [WebhookDeliveryResponse.model_validate(d) for d in deliveries]


@router.get("/webhooks/deliveries/{delivery_id}", response_model=WebhookDeliveryResponse)
async def get_delivery(delivery_id: str):
    svc = _get_service()
    async with _get_db().get_session() as session:
        delivery = await svc.get_delivery(session, delivery_id)
        if delivery is None:
            raise HTTPException(status_code=404, detail="Delivery not found")
        return WebhookDeliveryResponse.model_validate(delivery)


@router.post("/webhooks/deliveries/{delivery_id}/retry", response_model=WebhookDeliveryResponse)
async def redeliver(delivery_id: str):
    """Reset a delivery to pending and send it again through the retry executor."""
    svc = _get_service()
    async with _get_db().get_session() as session:
        delivery = await svc.retry_delivery(session, delivery_id)
        if delivery is None:
            raise HTTPException(status_code=404, detail="Delivery not found")
        return WebhookDeliveryResponse.model_validate(delivery)


@router.get("/webhooks/{endpoint_id}", response_model=WebhookEndpointResponse)
async def get_subscription(endpoint_id: str):
    svc = _get_service()
    async with _get_db().get_session() as session:
        endpoint = await svc.get_endpoint(session, endpoint_id)
        if endpoint is None:
            raise _endpoint_not_found()
        return WebhookEndpointResponse.model_validate(endpoint)


@router.patch("/webhooks/{endpoint_id}", response_model=WebhookEndpointResponse)
async def update_subscription(endpoint_id: str, body: WebhookEndpointUpdate):
    svc = _get_service()
    async with _get_db().get_session() as session:
        endpoint = await svc.update_endpoint(
            session, endpoint_id, **body.model_dump(exclude_none=True),
        )
        if endpoint is None:
            raise _endpoint_not_found()
        return WebhookEndpointResponse.model_validate(endpoint)


@router.delete("/webhooks/{endpoint_id}", status_code=204)
async def unsubscribe(endpoint_id: str):
    svc = _get_service()
    async with _get_db().get_session() as session:
        if not await svc.delete_endpoint(session, endpoint_id):
            raise _endpoint_not_found()
    return Response(status_code=204)


@router.get("/webhooks/{endpoint_id}/deliveries", response_model=list[WebhookDeliveryResponse])
async def list_endpoint_deliveries(
    endpoint_id: str,
    status: DeliveryStatus | None = Query(None),
    event_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    svc = _get_service()
    async with _get_db().get_session() as session:
        if await svc.get_endpoint(session, endpoint_id) is None:
            raise _endpoint_not_found()
        deliveries = await svc.get_deliveries(
            session, endpoint_id=endpoint_id, event_type=event_type, status=status,
            limit=limit, offset=offset,
        )
        return [WebhookDeliveryResponse.model_validate(d) for d in deliveries]
