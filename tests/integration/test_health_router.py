"""Integration tests for the health endpoint."""

from unittest.mock import AsyncMock, patch

from ledgersync.deps import get_db


class TestHealth:
    async def test_healthy(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok", "version": "0.1.0", "service": "ledgersync", "database": "ok",
        }

    async def test_database_unavailable(self, client):
        with patch.object(get_db(), "ping", new=AsyncMock(return_value=False)):
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"
        assert resp.json()["database"] == "unavailable"
