"""Webhook service — endpoint CRUD, dispatch, and retried delivery."""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import WebhookDeliveryError
from ledgersync.common.models import utcnow
from ledgersync.common.retry import JobResult, RetryExecutor, is_transient
from ledgersync.webhooks.models import (
    VALID_EVENT_TYPES,
    WebhookDeliveryModel,
    WebhookEndpointModel,
)

logger = logging.getLogger(__name__)

JOB_TYPE = "webhook_delivery"

# session.info keys for sends waiting on the surrounding commit
_PENDING_SENDS = "ledgersync.webhooks.pending"
_HOOKED = "ledgersync.webhooks.hooked"


def sign_payload(payload_json: str, secret: str) -> str:
    """Compute HMAC-SHA256 hex digest for a JSON payload."""
    return hmac.new(
        secret.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def is_retryable_delivery(error: BaseException) -> bool:
    """Network failures, 429 and 5xx are retried; other 4xx responses are final."""
    if isinstance(error, WebhookDeliveryError):
        code = error.status_code
        return code is None or code == 429 or code >= 500
    return is_transient(error)


class WebhookService:
    """
    Webhook endpoint management and event dispatch.

    Deliveries run in the background through the retry executor; a delivery
    that exhausts its retries leaves a dead-letter entry whose id is stored
    on the delivery row.
    """

    def __init__(self, settings: LedgerSyncSettings, db=None, executor: RetryExecutor | None = None):
        self.settings = settings
        self.db = db
        self.executor = executor
        self._http_client = None
        self._tasks: set[asyncio.Task] = set()

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ── CRUD ──

    async def create_endpoint(
        self,
        session: AsyncSession,
        url: str,
        secret: str,
        event_types: list[str] | None = None,
        description: str = "",
        max_retries: int | None = None,
        timeout_seconds: int = 10,
    ) -> WebhookEndpointModel:
        endpoint = WebhookEndpointModel(
            url=url,
            secret=secret,
            event_types=event_types or [],
            description=description,
            max_retries=(
                self.settings.webhook_max_retries if max_retries is None else max_retries
            ),
            timeout_seconds=timeout_seconds,
        )
        session.add(endpoint)
        await session.flush()
        return endpoint

    async def get_endpoint(
        self, session: AsyncSession, endpoint_id: str,
    ) -> Optional[WebhookEndpointModel]:
        result = await session.execute(
            select(WebhookEndpointModel).where(WebhookEndpointModel.id == endpoint_id)
        )
        return result.scalar_one_or_none()

    async def list_endpoints(
        self, session: AsyncSession, status: str | None = None,
    ) -> list[WebhookEndpointModel]:
        query = select(WebhookEndpointModel)
        if status is not None:
            query = query.where(WebhookEndpointModel.status == status)
        query = query.order_by(WebhookEndpointModel.created_at.desc())
        result = await session.execute(query)
        return list(result.scalars().all())

    async def update_endpoint(
        self, session: AsyncSession, endpoint_id: str, **updates: Any,
    ) -> Optional[WebhookEndpointModel]:
        endpoint = await self.get_endpoint(session, endpoint_id)
        if endpoint is None:
            return None
        for field in ("url", "secret", "event_types", "description",
                      "max_retries", "timeout_seconds", "status"):
            if field in updates and updates[field] is not None:
                setattr(endpoint, field, updates[field])
        await session.flush()
        return endpoint

    async def delete_endpoint(self, session: AsyncSession, endpoint_id: str) -> bool:
        endpoint = await self.get_endpoint(session, endpoint_id)
        if endpoint is None:
            return False
        await session.delete(endpoint)
        await session.flush()
        return True

    # ── Dispatch ──

    async def dispatch(
        self,
        session: AsyncSession,
        event_type: str,
        payload: dict[str, Any],
    ) -> list[WebhookDeliveryModel]:
        """Create delivery records for matching active endpoints and schedule sends.

        Sends start only after the caller's transaction commits, so the
        delivery rows they update are visible; a rollback discards them
        unsent. Each send runs on its own session.
        """
        if event_type not in VALID_EVENT_TYPES:
            raise ValueError(f"Unknown webhook event type: {event_type}")
        result = await session.execute(
            select(WebhookEndpointModel).where(WebhookEndpointModel.status == "active")
        )
        endpoints = list(result.scalars().all())

        envelope = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": payload,
        }

        deliveries = []
        for ep in endpoints:
            if not ep.subscribes_to(event_type):
                continue

            delivery = WebhookDeliveryModel(
                endpoint_id=ep.id,
                event_type=event_type,
                milestone_id=payload.get("milestone_id"),
                payload=envelope,
                status="pending",
            )
            session.add(delivery)
            await session.flush()

            self._schedule_after_commit(
                session,
                delivery_id=delivery.id,
                url=ep.url,
                secret=ep.secret,
                payload=envelope,
                max_retries=ep.max_retries,
                timeout=ep.timeout_seconds,
            )
            deliveries.append(delivery)

        return deliveries

    def _schedule_after_commit(self, session: AsyncSession, **kwargs: Any) -> None:
        """Queue a send on the session until its transaction commits."""
        info = session.info
        info.setdefault(_PENDING_SENDS, []).append(kwargs)
        if info.get(_HOOKED):
            return
        info[_HOOKED] = True

        def on_commit(sync_session) -> None:
            for pending in sync_session.info.pop(_PENDING_SENDS, []):
                self._schedule(**pending)

        def on_rollback(sync_session) -> None:
            dropped = sync_session.info.pop(_PENDING_SENDS, [])
            if dropped:
                logger.info("Discarded %d webhook send(s) after rollback", len(dropped))

        event.listen(session.sync_session, "after_commit", on_commit)
        event.listen(session.sync_session, "after_rollback", on_rollback)

    def _schedule(self, **kwargs: Any) -> None:
        task = asyncio.create_task(self._send_delivery(**kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(
        self, url: str, secret: str, payload: dict[str, Any], timeout: int,
    ) -> int:
        payload_json = json.dumps(payload, default=str)
        headers = {
            "Content-Type": "application/json",
            "X-Ledgersync-Signature": sign_payload(payload_json, secret),
            "X-Ledgersync-Event": payload.get("event_type", ""),
        }
        try:
            resp = await self._get_http_client().post(
                url, content=payload_json, headers=headers, timeout=timeout,
            )
        except httpx.TimeoutException:
            raise WebhookDeliveryError("timeout") from None
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(str(e) or type(e).__name__) from e

        if not 200 <= resp.status_code < 300:
            raise WebhookDeliveryError(f"HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.status_code

    async def _send_delivery(
        self,
        delivery_id: str,
        url: str,
        secret: str,
        payload: dict[str, Any],
        max_retries: int,
        timeout: int,
    ) -> JobResult:
        """POST with an HMAC signature, retried through the executor."""
        last_status: dict[str, int | None] = {"code": None}

        async def attempt(job: dict[str, Any]) -> int:
            try:
                code = await self._post(job["url"], secret, job["body"], timeout)
            except WebhookDeliveryError as e:
                last_status["code"] = e.status_code
                raise
            last_status["code"] = code
            return code

        job_payload = {"delivery_id": delivery_id, "url": url, "body": payload}
        result = await self.executor.run_with_retries(
            JOB_TYPE,
            job_payload,
            attempt,
            max_retries=max_retries,
            retry_delay=self.settings.webhook_retry_delay,
            should_retry=is_retryable_delivery,
        )
        await self._update_delivery_status(delivery_id, result, last_status["code"])
        return result

    async def _update_delivery_status(
        self, delivery_id: str, result: JobResult, response_code: int | None,
    ) -> None:
        """Update delivery record using a fresh DB session."""
        async with self.db.get_session() as session:
            delivery = await self.get_delivery(session, delivery_id)
            if delivery is None:
                return
            delivery.status = "success" if result.success else "failed"
            delivery.attempts = result.attempts
            delivery.last_response_code = response_code
            delivery.last_error = result.error
            delivery.dead_letter_id = result.dead_letter_id
            if result.success:
                delivery.delivered_at = utcnow()

    # ── Delivery queries ──

    async def get_deliveries(
        self,
        session: AsyncSession,
        endpoint_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        milestone_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDeliveryModel]:
        query = select(WebhookDeliveryModel)
        if endpoint_id is not None:
            query = query.where(WebhookDeliveryModel.endpoint_id == endpoint_id)
        if event_type is not None:
            query = query.where(WebhookDeliveryModel.event_type == event_type)
        if status is not None:
            query = query.where(WebhookDeliveryModel.status == status)
        if milestone_id is not None:
            query = query.where(WebhookDeliveryModel.milestone_id == milestone_id)
        query = query.order_by(WebhookDeliveryModel.created_at.desc())
        query = query.offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_delivery(
        self, session: AsyncSession, delivery_id: str,
    ) -> Optional[WebhookDeliveryModel]:
        result = await session.execute(
            select(WebhookDeliveryModel).where(WebhookDeliveryModel.id == delivery_id)
        )
        return result.scalar_one_or_none()

    async def retry_delivery(
        self, session: AsyncSession, delivery_id: str,
    ) -> Optional[WebhookDeliveryModel]:
        """Reset a failed delivery to pending and re-fire once the reset commits."""
        delivery = await self.get_delivery(session, delivery_id)
        if delivery is None:
            return None
        endpoint = await self.get_endpoint(session, delivery.endpoint_id)
        if endpoint is None:
            return None

        delivery.status = "pending"
        delivery.attempts = 0
        delivery.last_error = None
        delivery.dead_letter_id = None
        await session.flush()

        self._schedule_after_commit(
            session,
            delivery_id=delivery.id,
            url=endpoint.url,
            secret=endpoint.secret,
            payload=delivery.payload,
            max_retries=endpoint.max_retries,
            timeout=endpoint.timeout_seconds,
        )
        return delivery
