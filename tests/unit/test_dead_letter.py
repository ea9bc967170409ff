"""Tests for the dead-letter service."""

import pytest

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.database import DatabaseManager
from ledgersync.common.exceptions import DeadLetterNotFoundError, DeadLetterStateError
from ledgersync.common.models import as_utc
from ledgersync.deadletter.service import DeadLetterService


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
    return DeadLetterService()


async def _add(db, svc, job_type="ledger_event", error="boom", retry_count=3):
    async with db.get_session() as session:
        entry = await svc.add(session, job_type, {"n": 1}, error, retry_count=retry_count)
        return entry.id


class TestAdd:
    async def test_from_exception(self, db, svc):
        try:
            raise KeyError("missing")
        except KeyError as e:
            async with db.get_session() as session:
                entry = await svc.add(session, "job", {}, e, retry_count=2)
        assert entry.status == "pending"
        assert entry.retry_count == 2
        assert "missing" in entry.error_message
        assert "KeyError" in entry.stack_trace
        assert entry.first_failed_at == entry.last_failed_at
        assert entry.resolved_at is None

    async def test_from_string(self, db, svc):
        entry_id = await _add(db, svc, error="plain message")
        async with db.get_session() as session:
            entry = await svc.get(session, entry_id)
        assert entry.error_message == "plain message"
        assert entry.stack_trace is None


class TestDiscard:
    async def test_discard(self, db, svc):
        entry_id = await _add(db, svc)
        async with db.get_session() as session:
            entry = await svc.discard(session, entry_id)
        assert entry.status == "discarded"
        assert entry.resolved_at is not None

    async def test_discard_is_idempotent(self, db, svc):
        entry_id = await _add(db, svc)
        async with db.get_session() as session:
            first = await svc.discard(session, entry_id)
            first_resolved = first.resolved_at
        async with db.get_session() as session:
            second = await svc.discard(session, entry_id)
        assert second.status == "discarded"
        assert as_utc(second.resolved_at) == as_utc(first_resolved)

    async def test_discard_unknown(self, db, svc):
        async with db.get_session() as session:
            assert await svc.discard(session, "nope") is None


class TestReprocessingStates:
    async def test_mark_and_resolve(self, db, svc):
        entry_id = await _add(db, svc)
        async with db.get_session() as session:
            entry = await svc.mark_reprocessing(session, entry_id)
            assert entry.status == "reprocessing"
        async with db.get_session() as session:
            entry = await svc.resolve(session, entry_id)
        assert entry.resolved_at is not None

    async def test_cannot_reprocess_discarded(self, db, svc):
        entry_id = await _add(db, svc)
        async with db.get_session() as session:
            await svc.discard(session, entry_id)
        with pytest.raises(DeadLetterStateError):
            async with db.get_session() as session:
                await svc.mark_reprocessing(session, entry_id)

    async def test_cannot_reprocess_twice_concurrently(self, db, svc):
        entry_id = await _add(db, svc)
        async with db.get_session() as session:
            await svc.mark_reprocessing(session, entry_id)
        with pytest.raises(DeadLetterStateError):
            async with db.get_session() as session:
                await svc.mark_reprocessing(session, entry_id)

    async def test_mark_unknown(self, db, svc):
        with pytest.raises(DeadLetterNotFoundError):
            async with db.get_session() as session:
                await svc.mark_reprocessing(session, "nope")

    async def test_return_to_pending(self, db, svc):
        entry_id = await _add(db, svc, retry_count=3)
        async with db.get_session() as session:
            await svc.mark_reprocessing(session, entry_id)
        async with db.get_session() as session:
            entry = await svc.return_to_pending(session, entry_id, RuntimeError("again"))
        assert entry.status == "pending"
        assert entry.retry_count == 4
        assert entry.error_message == "again"
        assert entry.resolved_at is None


class TestQueries:
    async def test_list_filters(self, db, svc):
        await _add(db, svc, job_type="ledger_event")
        await _add(db, svc, job_type="ledger_event")
        webhook_id = await _add(db, svc, job_type="webhook_delivery")
        async with db.get_session() as session:
            await svc.discard(session, webhook_id)

        async with db.get_session() as session:
            assert len(await svc.list_entries(session)) == 3
            assert len(await svc.list_entries(session, job_type="ledger_event")) == 2
            discarded = await svc.list_entries(session, status="discarded")
            assert [e.id for e in discarded] == [webhook_id]
            assert len(await svc.list_entries(session, limit=1)) == 1

    async def test_metrics(self, db, svc):
        first = await _add(db, svc, job_type="ledger_event")
        await _add(db, svc, job_type="ledger_event")
        third = await _add(db, svc, job_type="webhook_delivery")
        async with db.get_session() as session:
            await svc.discard(session, first)
            await svc.mark_reprocessing(session, third)

        async with db.get_session() as session:
            metrics = await svc.metrics(session)
        assert metrics == {
            "total": 3,
            "pending": 1,
            "reprocessing": 1,
            "discarded": 1,
            "by_job_type": {"ledger_event": 2, "webhook_delivery": 1},
        }

    async def test_metrics_empty(self, db, svc):
        async with db.get_session() as session:
            metrics = await svc.metrics(session)
        assert metrics["total"] == 0
        assert metrics["by_job_type"] == {}
