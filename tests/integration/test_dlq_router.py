"""Integration tests for the dead-letter queue API."""

import pytest

from ledgersync.deps import get_db, get_dead_letter_service, get_event_processor
from ledgersync.ingestion.parser import ParsedEvent, VaultStatusPayload


def vault_completed(vault_id="vault-1") -> ParsedEvent:
    return ParsedEvent(
        event_id="tx-complete:0",
        transaction_hash="tx-complete",
        event_index=0,
        ledger_position=77,
        event_type="vault_completed",
        payload=VaultStatusPayload(vault_id=vault_id, status="completed"),
    )


@pytest.fixture
async def dead_letter(client):
    """A ledger event that exhausted its retries because its vault is unknown."""
    result = await get_event_processor().process(vault_completed())
    assert result.dead_letter_id is not None
    return result.dead_letter_id


class TestInspect:
    async def test_list(self, client, dead_letter, admin_headers):
        resp = await client.get("/dlq", headers=admin_headers)
        assert resp.status_code == 200
        entries = resp.json()
        assert [e["id"] for e in entries] == [dead_letter]
        assert entries[0]["job_type"] == "ledger_event"
        assert entries[0]["retry_count"] == 3
        assert entries[0]["payload"]["event"]["event_id"] == "tx-complete:0"

    async def test_list_filters(self, client, dead_letter, admin_headers):
        resp = await client.get("/dlq?status=discarded", headers=admin_headers)
        assert resp.json() == []
        resp = await client.get("/dlq?job_type=webhook_delivery", headers=admin_headers)
        assert resp.json() == []

    async def test_invalid_status_filter(self, client, admin_headers):
        resp = await client.get("/dlq?status=resolved", headers=admin_headers)
        assert resp.status_code == 422

    async def test_get(self, client, dead_letter, admin_headers):
        resp = await client.get(f"/dlq/{dead_letter}", headers=admin_headers)
        assert resp.status_code == 200
        assert "Vault not found" in resp.json()["error_message"]

    async def test_get_unknown(self, client, admin_headers):
        resp = await client.get("/dlq/nope", headers=admin_headers)
        assert resp.status_code == 404

    async def test_metrics(self, client, dead_letter, admin_headers):
        resp = await client.get("/dlq/metrics", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {
            "total": 1,
            "pending": 1,
            "reprocessing": 0,
            "discarded": 0,
            "by_job_type": {"ledger_event": 1},
        }

    async def test_requires_auth(self, client):
        resp = await client.get("/dlq")
        assert resp.status_code in (401, 403, 422)


class TestDiscard:
    async def test_discard(self, client, dead_letter, admin_headers):
        resp = await client.post(f"/dlq/{dead_letter}/discard", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "discarded"
        assert resp.json()["resolved_at"] is not None

    async def test_discard_unknown(self, client, admin_headers):
        resp = await client.post("/dlq/nope/discard", headers=admin_headers)
        assert resp.status_code == 404


class TestReprocess:
    async def test_still_failing_returns_to_queue(self, client, dead_letter, admin_headers):
        resp = await client.post(f"/dlq/{dead_letter}/reprocess", headers=admin_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["outcome"] == "failed"
        assert data["entry"]["status"] == "pending"
        assert data["entry"]["retry_count"] == 4

    async def test_succeeds_once_cause_is_fixed(
        self, client, dead_letter, vault, admin_headers,
    ):
        resp = await client.post(f"/dlq/{dead_letter}/reprocess", headers=admin_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["outcome"] == "applied"
        assert data["event_id"] == "tx-complete:0"
        assert data["entry"]["resolved_at"] is not None

    async def test_discarded_cannot_be_reprocessed(self, client, dead_letter, admin_headers):
        await client.post(f"/dlq/{dead_letter}/discard", headers=admin_headers)
        resp = await client.post(f"/dlq/{dead_letter}/reprocess", headers=admin_headers)
        assert resp.status_code == 409

    async def test_other_job_types_are_rejected(self, client, admin_headers):
        async with get_db().get_session() as session:
            entry = await get_dead_letter_service().add(
                session, "webhook_delivery", {"delivery_id": "d1"}, "HTTP 500", retry_count=4,
            )
            entry_id = entry.id
        resp = await client.post(f"/dlq/{entry_id}/reprocess", headers=admin_headers)
        assert resp.status_code == 409

    async def test_reprocess_unknown(self, client, admin_headers):
        resp = await client.post("/dlq/nope/reprocess", headers=admin_headers)
        assert resp.status_code == 404
