"""
Ledger event source.

The ingestion loop only depends on the EventFetcher protocol. The HTTP
implementation speaks the JSON-RPC ``getEvents`` method of a ledger RPC
node: it starts at a ledger position on the first call and then follows
the opaque paging cursor returned by the node.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import LedgerFetchError
from ledgersync.ingestion.parser import RawEvent


@dataclass
class FetchedBatch:
    """One page of raw events in ledger order."""
    events: list[RawEvent] = field(default_factory=list)
    cursor: Optional[str] = None
    latest_position: Optional[int] = None


class EventFetcher(Protocol):
    async def fetch(
        self, start_position: int, cursor: str | None = None, limit: int = 100,
    ) -> FetchedBatch:
        ...

    async def close(self) -> None:
        ...


class HttpLedgerFetcher:
    """Fetch contract events from a ledger RPC node over HTTP."""

    def __init__(
        self,
        settings: LedgerSyncSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.contract_ids = list(settings.contract_ids)
        self._request_id = 0
        self._http = httpx.AsyncClient(
            base_url=settings.ledger_url.rstrip("/"),
            timeout=settings.fetch_timeout,
            transport=transport,
        )

    def _build_params(
        self, start_position: int, cursor: str | None, limit: int,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"pagination": {"limit": limit}}
        # The node rejects startLedger together with a paging cursor
        if cursor:
            params["pagination"]["cursor"] = cursor
        else:
            params["startLedger"] = start_position
        if self.contract_ids:
            params["filters"] = [{"type": "contract", "contractIds": self.contract_ids}]
        return params

    def _is_watched(self, event: RawEvent) -> bool:
        if not self.contract_ids:
            return True
        return event.contract_id in self.contract_ids

    async def fetch(
        self, start_position: int, cursor: str | None = None, limit: int = 100,
    ) -> FetchedBatch:
        """
        Fetch the next page of events.

        Raises:
            LedgerFetchError on transport failures, timeouts, non-2xx
            responses, and JSON-RPC errors.
        """
        self._request_id += 1
        body = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": "getEvents",
            "params": self._build_params(start_position, cursor, limit),
        }
        try:
            resp = await self._http.post("/", json=body)
        except httpx.TimeoutException:
            raise LedgerFetchError("Ledger fetch timed out") from None
        except httpx.HTTPError as e:
            raise LedgerFetchError(f"Ledger connection error: {e}") from e

        if resp.status_code >= 400:
            raise LedgerFetchError(f"Ledger fetch failed: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except json.JSONDecodeError:
            raise LedgerFetchError("Ledger returned invalid JSON") from None

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LedgerFetchError(f"Ledger RPC error: {message}")

        result = data.get("result") or {}
        events = [
            RawEvent.from_dict(item)
            for item in result.get("events") or []
            if isinstance(item, dict)
        ]
        return FetchedBatch(
            events=[e for e in events if self._is_watched(e)],
            cursor=result.get("cursor") or None,
            latest_position=result.get("latestLedger"),
        )

    async def close(self) -> None:
        await self._http.aclose()
