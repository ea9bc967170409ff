"""Shared test fixtures for ledgersync."""

import os
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient


API_KEY = "test-admin-api-key"
EVIDENCE_KEY = "test-evidence-key-for-unit-tests"


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def app():
    """Create a test app with in-memory DB."""
    os.environ["LEDGERSYNC_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["LEDGERSYNC_API_KEY"] = API_KEY
    os.environ["LEDGERSYNC_EVIDENCE_ENCRYPTION_KEY"] = EVIDENCE_KEY
    os.environ["LEDGERSYNC_EXPIRATION_SWEEP_INTERVAL"] = "0"
    os.environ["LEDGERSYNC_RETRY_BASE_DELAY"] = "0"

    # Clear caches and singletons so new env vars take effect
    from ledgersync.common.config import get_settings
    get_settings.cache_clear()

    from ledgersync.deps import reset_singletons
    reset_singletons()

    from ledgersync.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from ledgersync.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Ledgersync-Api-Key": API_KEY}


@pytest.fixture
def verifier_headers():
    def _headers(verifier_id: str, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"X-Ledgersync-Api-Key": API_KEY, "X-Verifier-Id": verifier_id}
        if idempotency_key is not None:
            headers["Idempotency-Key"] = idempotency_key
        return headers
    return _headers


@pytest.fixture
async def vault(client):
    """Vault 'vault-1' as the ledger listener would have written it."""
    from ledgersync.deps import get_db
    from ledgersync.milestones.models import VaultModel

    now = datetime.now(timezone.utc)
    async with get_db().get_session() as session:
        session.add(VaultModel(
            id="vault-1",
            creator="GCREATOR",
            amount="1000",
            start_timestamp=now,
            end_timestamp=now + timedelta(days=30),
            success_destination="GSUCCESS",
            failure_destination="GFAILURE",
        ))
    return "vault-1"


@pytest.fixture
async def milestone(client, vault, admin_headers):
    """Milestone 'ms-1' on vault-1 with verifiers v1 and v2 under the 'all' policy."""
    deadline = datetime.now(timezone.utc) + timedelta(days=7)
    resp = await client.post(
        "/milestones",
        headers=admin_headers,
        json={
            "id": "ms-1",
            "vault_id": vault,
            "title": "Foundation poured",
            "deadline": deadline.isoformat(),
            "verifier_ids": ["v1", "v2"],
        },
    )
    assert resp.status_code == 201
    return resp.json()
