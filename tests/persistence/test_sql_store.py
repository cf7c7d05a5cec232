"""Tests for SqlScheduleStore on an in-memory SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest

from pulse.persistence.database import DatabaseConfig, normalize_database_url
from pulse.scheduling.models import Outcome, RunRecord, RunStatus, RunTrigger, Schedule
from pulse.scheduling.registry import ScheduleRegistry


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


NOW = utc(2024, 3, 4, 10, 15, 2)


def make_schedule(resource_id: str = "db-primary", **kwargs) -> Schedule:
    kwargs.setdefault("next_due_at", utc(2024, 3, 4, 10, 15))
    kwargs.setdefault("created_at", utc(2024, 3, 4, 10, 0))
    kwargs.setdefault("updated_at", utc(2024, 3, 4, 10, 0))
    return Schedule(resource_id=resource_id, cron_expression="*/15 * * * *", **kwargs)


def make_run(schedule_id: str, n: int) -> RunRecord:
    return RunRecord(
        operation_id=f"op-{n}",
        schedule_id=schedule_id,
        resource_id="db-primary",
        trigger=RunTrigger.SCHEDULE,
        started_at=utc(2024, 3, 4, 10, n),
    )


class TestDatabaseUrl:

    @pytest.mark.parametrize("url, expected", [
        ("postgresql://u:p@db/pulse", "postgresql+psycopg_async://u:p@db/pulse"),
        ("postgresql+psycopg://u:p@db/pulse", "postgresql+psycopg_async://u:p@db/pulse"),
        ("postgresql+psycopg_async://u:p@db/pulse", "postgresql+psycopg_async://u:p@db/pulse"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ])
    def test_normalize(self, url, expected):
        assert normalize_database_url(url) == expected

    def test_explicit_url_is_normalized(self):
        assert DatabaseConfig(url="postgresql://u:p@db/pulse").url.startswith("postgresql+psycopg_async://")


class TestScheduleRows:

    @pytest.mark.asyncio
    async def test_insert_and_get(self, sql_store):
        schedule = await sql_store.insert(make_schedule())

        loaded = await sql_store.get(schedule.id)

        assert loaded.resource_id == "db-primary"
        assert loaded.cron_expression == "*/15 * * * *"
        assert loaded.next_due_at == utc(2024, 3, 4, 10, 15)
        assert loaded.next_due_at.tzinfo is not None
        assert loaded.active_operation_id is None

    @pytest.mark.asyncio
    async def test_get_unknown(self, sql_store):
        assert await sql_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_by_resource(self, sql_store):
        await sql_store.insert(make_schedule("db-primary"))
        await sql_store.insert(make_schedule("db-replica"))

        assert len(await sql_store.list()) == 2
        assert [s.resource_id for s in await sql_store.list("db-replica")] == ["db-replica"]

    @pytest.mark.asyncio
    async def test_update_definition(self, sql_store):
        schedule = await sql_store.insert(make_schedule())

        updated = await sql_store.update_definition(
            schedule.id, "0 * * * *", False, None, utc(2024, 3, 4, 10, 5)
        )

        assert updated.cron_expression == "0 * * * *"
        assert not updated.enabled
        assert updated.next_due_at is None
        assert await sql_store.update_definition("missing", "0 * * * *", True, None, NOW) is None

    @pytest.mark.asyncio
    async def test_delete_removes_history(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        await sql_store.append_run(make_run(schedule.id, 1), limit=5)

        assert await sql_store.delete(schedule.id)
        assert not await sql_store.delete(schedule.id)
        assert await sql_store.list_runs(schedule.id, 5) == []

    @pytest.mark.asyncio
    async def test_find_due(self, sql_store):
        due = await sql_store.insert(make_schedule())
        await sql_store.insert(make_schedule(next_due_at=utc(2024, 3, 4, 10, 30)))
        await sql_store.insert(make_schedule(enabled=False, next_due_at=None))

        assert [s.id for s in await sql_store.find_due(NOW)] == [due.id]


class TestClaims:

    @pytest.mark.asyncio
    async def test_second_claim_loses(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        expires = NOW + timedelta(seconds=90)

        assert await sql_store.try_claim(schedule.id, "op-a", NOW, expires)
        assert not await sql_store.try_claim(schedule.id, "op-b", NOW, expires)

        claimed = await sql_store.get(schedule.id)
        assert claimed.active_operation_id == "op-a"
        assert claimed.claim_expires_at == expires
        assert await sql_store.find_due(NOW) == []

    @pytest.mark.asyncio
    async def test_expired_claim_can_be_taken_over(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        expires = NOW + timedelta(seconds=90)
        assert await sql_store.try_claim(schedule.id, "op-a", NOW, expires)

        assert await sql_store.try_claim(schedule.id, "op-b", expires, expires + timedelta(seconds=90))
        assert (await sql_store.get(schedule.id)).active_operation_id == "op-b"

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        await sql_store.try_claim(schedule.id, "op-a", NOW, NOW + timedelta(seconds=90))

        assert not await sql_store.release_claim(schedule.id, "op-b")
        assert await sql_store.release_claim(schedule.id, "op-a")
        assert (await sql_store.get(schedule.id)).active_operation_id is None

    @pytest.mark.asyncio
    async def test_renew_only_by_holder(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        await sql_store.try_claim(schedule.id, "op-a", NOW, NOW + timedelta(seconds=90))
        later = NOW + timedelta(seconds=300)

        assert not await sql_store.renew_claim(schedule.id, "op-b", later)
        assert await sql_store.renew_claim(schedule.id, "op-a", later)
        assert (await sql_store.get(schedule.id)).claim_expires_at == later

    @pytest.mark.asyncio
    async def test_complete_run_releases_matching_claim(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        await sql_store.try_claim(schedule.id, "op-a", NOW, NOW + timedelta(seconds=90))

        # A result of another operation keeps the current claim
        stale = await sql_store.complete_run(
            schedule.id, "op-old", RunStatus.FAILED, "late", 10, NOW, utc(2024, 3, 4, 10, 30)
        )
        assert stale.active_operation_id == "op-a"

        done = await sql_store.complete_run(
            schedule.id, "op-a", RunStatus.SUCCEEDED, "Connected", 3000,
            utc(2024, 3, 4, 10, 15, 5), utc(2024, 3, 4, 10, 30)
        )
        assert done.active_operation_id is None
        assert done.claim_expires_at is None
        assert done.last_run_outcome == RunStatus.SUCCEEDED
        assert done.last_run_duration_ms == 3000
        assert done.next_due_at == utc(2024, 3, 4, 10, 30)


class TestRunHistory:

    @pytest.mark.asyncio
    async def test_history_is_bounded_and_newest_first(self, sql_store):
        schedule = await sql_store.insert(make_schedule())

        for n in range(1, 6):
            await sql_store.append_run(make_run(schedule.id, n), limit=3)

        runs = await sql_store.list_runs(schedule.id, 10)
        assert [r.operation_id for r in runs] == ["op-5", "op-4", "op-3"]
        assert runs[0].trigger == RunTrigger.SCHEDULE
        assert runs[0].status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_finish_run(self, sql_store):
        schedule = await sql_store.insert(make_schedule())
        await sql_store.append_run(make_run(schedule.id, 1), limit=3)

        assert await sql_store.finish_run(
            "op-1", RunStatus.TIMED_OUT, utc(2024, 3, 4, 10, 1, 30), 30000, "Timed out", "timeout"
        )
        assert not await sql_store.finish_run("op-missing", RunStatus.FAILED, NOW, 0, None, None)

        run = (await sql_store.list_runs(schedule.id, 3))[0]
        assert run.status == RunStatus.TIMED_OUT
        assert run.duration_ms == 30000
        assert run.error_code == "timeout"

    @pytest.mark.asyncio
    async def test_runs_without_schedule_are_not_stored(self, sql_store):
        await sql_store.append_run(
            RunRecord(operation_id="adhoc", resource_id="db-primary", trigger=RunTrigger.MANUAL),
            limit=3,
        )

        assert (await sql_store.health_check())['status'] == 'healthy'


class TestRegistryOnSql:

    @pytest.mark.asyncio
    async def test_full_run_cycle(self, sql_store, clock):
        registry = ScheduleRegistry(sql_store, clock=clock)
        schedule = await registry.create("db-primary", "*/15 * * * *")

        clock.set(NOW)
        assert [s.id for s in await registry.due_schedules()] == [schedule.id]
        assert await registry.claim(schedule.id, "op-1", lease_seconds=90)
        assert not await registry.claim(schedule.id, "op-2", lease_seconds=90)

        await registry.record_run_start(schedule.id, "op-1")
        clock.advance(seconds=3)
        await registry.record_run_result(schedule.id, "op-1", Outcome(
            status=RunStatus.SUCCEEDED, success=True, duration_ms=3000, message="Connected"
        ))

        finished = await registry.get(schedule.id)
        assert finished.active_operation_id is None
        assert finished.last_run_started_at == NOW
        assert finished.next_due_at == utc(2024, 3, 4, 10, 30)

        runs = await registry.recent_runs(schedule.id)
        assert runs[0].operation_id == "op-1"
        assert runs[0].status == RunStatus.SUCCEEDED
        assert runs[0].duration_ms == 3000
