"""Tests for the default ledger event handlers."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.database import DatabaseManager
from ledgersync.common.exceptions import MilestoneNotFoundError, VaultNotFoundError
from ledgersync.ingestion.handlers import HandlerRegistry, default_registry
from ledgersync.ingestion.parser import EVENT_TYPES, parse_event
from ledgersync.milestones.models import LedgerValidationModel
from ledgersync.milestones.service import MilestoneService

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_settings(**overrides) -> LedgerSyncSettings:
    defaults = {"db_url": "sqlite+aiosqlite://"}
    defaults.update(overrides)
    return LedgerSyncSettings(**defaults)


@pytest.fixture
async def db():
    manager = DatabaseManager(make_settings())
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def milestones():
    return MilestoneService(make_settings())


@pytest.fixture
def registry(milestones):
    return default_registry(milestones)


def event(topic, value, tx_hash="tx", ledger=1):
    result = parse_event({
        "ledger": ledger, "tx_hash": tx_hash, "topic": [topic], "value": value, "event_index": 0,
    })
    assert result.success, result.message
    return result.event


def vault_created(vault_id="vault-1"):
    return event("vault_created", {
        "vault_id": vault_id,
        "creator": "GCREATOR",
        "amount": "1000",
        "start_timestamp": START.isoformat(),
        "end_timestamp": (START + timedelta(days=90)).isoformat(),
        "success_destination": "GSUCCESS",
        "failure_destination": "GFAILURE",
    }, tx_hash=f"tx-{vault_id}")


def milestone_created(**overrides):
    value = {
        "milestone_id": "ms-1",
        "vault_id": "vault-1",
        "title": "Roof",
        "target_amount": "250",
        "deadline": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
        "approval_policy": "majority",
        "verifiers": ["GVERIFIER1", "GVERIFIER2"],
    }
    value.update(overrides)
    return event("milestone_created", value, tx_hash="tx-ms")


def milestone_validated(milestone_id="ms-1"):
    return event("milestone_validated", {
        "validation_id": "val-1",
        "milestone_id": milestone_id,
        "validator_address": "GVALIDATOR",
        "validation_result": "approved",
        "validated_at": 1767225600,
        "evidence_hash": "abc123",
    }, tx_hash="tx-val")


class TestRegistry:
    def test_default_covers_every_event_type(self, registry):
        assert all(event_type in registry for event_type in EVENT_TYPES)

    def test_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            HandlerRegistry().register("vault_exploded", AsyncMock())

    async def test_apply_without_handler(self, db):
        with pytest.raises(LookupError):
            async with db.get_session() as session:
                await HandlerRegistry().apply(session, vault_created())


class TestVaultHandlers:
    async def test_created_then_failed(self, db, registry, milestones):
        async with db.get_session() as session:
            await registry.apply(session, vault_created())
            await registry.apply(session, event("vault_failed", {"vault_id": "vault-1"}))
            vault = await milestones.get_vault(session, "vault-1")
            assert vault.status == "failed"
            assert vault.amount == "1000"

    async def test_created_twice_is_harmless(self, db, registry, milestones):
        async with db.get_session() as session:
            await registry.apply(session, vault_created())
            await registry.apply(session, vault_created())

    async def test_status_for_unknown_vault(self, db, registry):
        with pytest.raises(VaultNotFoundError):
            async with db.get_session() as session:
                await registry.apply(session, event("vault_cancelled", {"vault_id": "ghost"}))


class TestMilestoneHandlers:
    async def test_milestone_created_registers_verifiers(self, db, registry, milestones):
        async with db.get_session() as session:
            await registry.apply(session, vault_created())
            await registry.apply(session, milestone_created())
            ms = await milestones.get_milestone(session, "ms-1")
            assert ms.approval_policy == "majority"
            assignments = await milestones.list_assignments(session, "ms-1")
            assert sorted(a.verifier_id for a, _ in assignments) == ["GVERIFIER1", "GVERIFIER2"]

    async def test_milestone_created_replay_keeps_first(self, db, registry, milestones):
        async with db.get_session() as session:
            await registry.apply(session, vault_created())
            await registry.apply(session, milestone_created())
            await registry.apply(session, milestone_created(title="Changed"))
            assert (await milestones.get_milestone(session, "ms-1")).title == "Roof"

    async def test_milestone_created_needs_vault(self, db, registry):
        with pytest.raises(VaultNotFoundError):
            async with db.get_session() as session:
                await registry.apply(session, milestone_created())

    async def test_milestone_validated_records_once(self, db, registry):
        async with db.get_session() as session:
            await registry.apply(session, vault_created())
            await registry.apply(session, milestone_created())
            await registry.apply(session, milestone_validated())
            await registry.apply(session, milestone_validated())
            rows = (await session.execute(select(LedgerValidationModel))).scalars().all()
        assert len(rows) == 1
        assert rows[0].validation_result == "approved"
        assert rows[0].evidence_hash == "abc123"

    async def test_milestone_validated_needs_milestone(self, db, registry):
        with pytest.raises(MilestoneNotFoundError):
            async with db.get_session() as session:
                await registry.apply(session, milestone_validated("ms-404"))
