"""Tests for milestone service — assignments, aggregation, deactivation, sweep."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.database import DatabaseManager
from ledgersync.common.exceptions import (
    MilestoneNotFoundError,
    VaultNotFoundError,
    VerifierNotFoundError,
)
from ledgersync.milestones.models import VaultModel
from ledgersync.milestones.service import MilestoneService


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
def svc():
    return MilestoneService(make_settings())


def future(days=7):
    return datetime.now(timezone.utc) + timedelta(days=days)


async def add_vault(session, vault_id="vault-1"):
    now = datetime.now(timezone.utc)
    session.add(VaultModel(
        id=vault_id,
        creator="GCREATOR",
        amount="1000",
        start_timestamp=now,
        end_timestamp=now + timedelta(days=30),
        success_destination="GSUCCESS",
        failure_destination="GFAILURE",
    ))
    await session.flush()


async def decide(svc, session, milestone_id, verifier_id, decision):
    assignment = await svc.get_assignment(session, milestone_id, verifier_id)
    assignment.decision = decision
    await session.flush()
    return await svc.evaluate(session, milestone_id)


class TestCreateMilestone:
    async def test_creates_with_verifiers(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            ms = await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1", "v2"],
            )
            assert ms.id == "ms-1"
            assert ms.status == "pending"
            assignments = await svc.list_assignments(session, "ms-1")
            assert sorted(a.verifier_id for a, _ in assignments) == ["v1", "v2"]
            assert all(v.active for _, v in assignments)

    async def test_requires_vault(self, db, svc):
        with pytest.raises(VaultNotFoundError):
            async with db.get_session() as session:
                await svc.create_milestone(session, "missing", "Ship", future())

    async def test_rejects_unknown_policy(self, db, svc):
        with pytest.raises(ValueError):
            async with db.get_session() as session:
                await add_vault(session)
                await svc.create_milestone(
                    session, "vault-1", "Ship", future(), approval_policy="quorum",
                )

    async def test_assign_twice_returns_existing(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(session, "vault-1", "Ship", future(), milestone_id="ms-1")
            await svc.ensure_verifier(session, "v1")
            first = await svc.assign_verifier(session, "ms-1", "v1")
            second = await svc.assign_verifier(session, "ms-1", "v1")
            assert first.id == second.id

    async def test_assign_unknown_verifier(self, db, svc):
        with pytest.raises(VerifierNotFoundError):
            async with db.get_session() as session:
                await add_vault(session)
                await svc.create_milestone(
                    session, "vault-1", "Ship", future(), milestone_id="ms-1",
                )
                await svc.assign_verifier(session, "ms-1", "ghost")


class TestEvaluate:
    async def test_all_policy_approves(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1", "v2"],
            )
            agg = await decide(svc, session, "ms-1", "v1", "approved")
            assert agg.status == "pending"
            agg = await decide(svc, session, "ms-1", "v2", "approved")
            assert agg.status == "approved"
            ms = await svc.get_milestone(session, "ms-1")
            assert ms.status == "approved"
            assert ms.finalized_at is not None

    async def test_majority_policy(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(), milestone_id="ms-1",
                approval_policy="majority", verifier_ids=["v1", "v2", "v3"],
            )
            await decide(svc, session, "ms-1", "v1", "approved")
            agg = await decide(svc, session, "ms-1", "v2", "approved")
            assert agg.status == "approved"

    async def test_terminal_is_immutable(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1", "v2"],
            )
            await decide(svc, session, "ms-1", "v1", "rejected")
            agg = await decide(svc, session, "ms-1", "v2", "approved")
            assert agg.status == "rejected"

    async def test_no_verifiers_stays_pending(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(session, "vault-1", "Ship", future(), milestone_id="ms-1")
            agg = await svc.evaluate(session, "ms-1")
            assert agg.status == "pending"
            assert agg.total == 0

    async def test_unknown_milestone(self, db, svc):
        with pytest.raises(MilestoneNotFoundError):
            async with db.get_session() as session:
                await svc.evaluate(session, "nope")

    async def test_dispatches_webhook_on_final_status(self, db):
        webhook = MagicMock()
        webhook.dispatch = AsyncMock(return_value=[])
        svc = MilestoneService(make_settings(), webhook_service=webhook)
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1"],
            )
            await decide(svc, session, "ms-1", "v1", "approved")

        webhook.dispatch.assert_awaited_once()
        _, event_type, payload = webhook.dispatch.call_args.args
        assert event_type == "milestone.approved"
        assert payload["milestone_id"] == "ms-1"
        assert payload["approved"] == 1


class TestDeactivation:
    async def test_deactivation_completes_aggregation(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1", "v2"],
            )
            await decide(svc, session, "ms-1", "v1", "approved")
            verifier = await svc.deactivate_verifier(session, "v2")
            assert verifier.active is False
            assert verifier.deactivated_at is not None
            ms = await svc.get_milestone(session, "ms-1")
            assert ms.status == "approved"

    async def test_deactivation_leaves_terminal_untouched(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1", "v2"],
            )
            await decide(svc, session, "ms-1", "v1", "rejected")
            await svc.deactivate_verifier(session, "v1")
            ms = await svc.get_milestone(session, "ms-1")
            assert ms.status == "rejected"

    async def test_deactivating_last_verifier_keeps_pending(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Ship", future(),
                milestone_id="ms-1", verifier_ids=["v1"],
            )
            await svc.deactivate_verifier(session, "v1")
            ms = await svc.get_milestone(session, "ms-1")
            assert ms.status == "pending"

    async def test_deactivate_unknown(self, db, svc):
        with pytest.raises(VerifierNotFoundError):
            async with db.get_session() as session:
                await svc.deactivate_verifier(session, "ghost")


class TestSweep:
    async def test_expires_past_deadline(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Late", future(days=-1),
                milestone_id="late", verifier_ids=["v1"],
            )
            await svc.create_milestone(
                session, "vault-1", "On time", future(),
                milestone_id="on-time", verifier_ids=["v1"],
            )
        async with db.get_session() as session:
            expired = await svc.sweep_expired(session)
        assert expired == ["late"]
        async with db.get_session() as session:
            assert (await svc.get_milestone(session, "late")).status == "expired"
            assert (await svc.get_milestone(session, "on-time")).status == "pending"

    async def test_sweep_skips_terminal(self, db, svc):
        async with db.get_session() as session:
            await add_vault(session)
            await svc.create_milestone(
                session, "vault-1", "Done", future(),
                milestone_id="done", verifier_ids=["v1"],
            )
            await decide(svc, session, "done", "v1", "approved")
        later = datetime.now(timezone.utc) + timedelta(days=30)
        async with db.get_session() as session:
            assert await svc.sweep_expired(session, now=later) == []
            assert (await svc.get_milestone(session, "done")).status == "approved"
