"""Unit tests for the Executor."""

import asyncio
from datetime import datetime, timezone

import pytest

from pulse.broadcast.hub import BroadcastHub
from pulse.integrations import ResourceProvider
from pulse.scheduling.executor import Executor
from pulse.scheduling.metrics import SchedulingMetrics
from pulse.scheduling.models import ProbeResult, RunStatus, RunTrigger
from pulse.scheduling.registry import ScheduleRegistry
from pulse.scheduling.store import InMemoryScheduleStore
from tests.helpers import GatedTester, RecordingTransport, ScriptedTester


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class BrokenProvider(ResourceProvider):
    async def get_resource(self, resource_id):
        raise RuntimeError("resource catalog unavailable")


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def hub(transport, clock) -> BroadcastHub:
    return BroadcastHub(transport=transport, clock=clock)


@pytest.fixture
def registry(clock) -> ScheduleRegistry:
    return ScheduleRegistry(InMemoryScheduleStore(), clock=clock)


def make_executor(provider, tester, hub, registry=None, clock=None, **kwargs) -> Executor:
    return Executor(provider, tester, hub, registry=registry, clock=clock, **kwargs)


class TestExecutorOutcomes:

    @pytest.mark.asyncio
    async def test_success(self, provider, hub, transport, clock):
        tester = ScriptedTester(clock=clock, latency_seconds=3, result=ProbeResult(
            success=True, message="Connected", server_info={"version": "15.2"}
        ))
        executor = make_executor(provider, tester, hub, clock=clock)
        await hub.join("op-1", "observer")

        outcome = await executor.run("op-1", "db-primary", timeout=5)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.success
        assert outcome.duration_ms == 3000
        assert outcome.server_info == {"version": "15.2"}
        assert tester.calls == ["db-primary"]

        assert transport.statuses("observer") == ["running", "succeeded"]
        final = transport.messages["observer"][-1]["snapshot"]
        assert final["percentage"] == 100.0
        assert final["outcome"]["duration_ms"] == 3000

    @pytest.mark.asyncio
    async def test_failed_test_result(self, provider, hub, clock):
        tester = ScriptedTester(result=ProbeResult(
            success=False, message="Authentication failed", error_code="auth_failed"
        ))
        executor = make_executor(provider, tester, hub, clock=clock)

        outcome = await executor.run("op-1", "db-primary")

        assert outcome.status == RunStatus.FAILED
        assert not outcome.success
        assert outcome.error_code == "auth_failed"
        assert outcome.message == "Authentication failed"

        state = await hub.current_state("op-1")
        assert state.status == RunStatus.FAILED
        assert state.recent_errors == ["Authentication failed"]

    @pytest.mark.asyncio
    async def test_failed_test_defaults_error_code(self, provider, hub):
        executor = make_executor(provider, ScriptedTester(result=ProbeResult(success=False)), hub)

        outcome = await executor.run("op-1", "db-primary")

        assert outcome.error_code == "test_failed"
        assert outcome.message == "Connection test failed"

    @pytest.mark.asyncio
    async def test_exception_becomes_failed_outcome(self, provider, hub):
        tester = ScriptedTester(error=ConnectionResetError("connection reset by peer"))
        executor = make_executor(provider, tester, hub)

        outcome = await executor.run("op-1", "db-primary")

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_code == "execution_failure"
        assert outcome.error_details == {"exception_type": "ConnectionResetError"}
        assert "connection reset" in outcome.message

    @pytest.mark.asyncio
    async def test_unknown_resource(self, provider, hub):
        tester = ScriptedTester()
        executor = make_executor(provider, tester, hub)

        outcome = await executor.run("op-1", "no-such-resource")

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_code == "resource_not_found"
        assert tester.calls == []

    @pytest.mark.asyncio
    async def test_provider_failure(self, hub):
        executor = make_executor(BrokenProvider(), ScriptedTester(), hub)

        outcome = await executor.run("op-1", "db-primary")

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_code == "execution_failure"
        assert outcome.message == "resource catalog unavailable"

    @pytest.mark.asyncio
    async def test_timeout_publishes_exactly_one_terminal_event(self, provider, hub, transport):
        executor = make_executor(provider, ScriptedTester(delay=5), hub)
        await hub.join("op-1", "observer")

        outcome = await executor.run("op-1", "db-primary", timeout=0.05)

        assert outcome.status == RunStatus.TIMED_OUT
        assert outcome.error_code == "timeout"
        assert outcome.error_details == {"timeout_seconds": 0.05}

        statuses = transport.statuses("observer")
        assert statuses == ["running", "timed-out"]
        assert sum(1 for s in statuses if s != "running") == 1

    @pytest.mark.asyncio
    async def test_default_timeout(self, provider, hub):
        executor = make_executor(provider, ScriptedTester(delay=5), hub, default_timeout_seconds=0.05)

        outcome = await executor.run("op-1", "db-primary")

        assert outcome.status == RunStatus.TIMED_OUT

    @pytest.mark.asyncio
    async def test_cancellation_records_cancelled_outcome(self, provider, hub, registry):
        schedule = await registry.create("db-primary", "*/15 * * * *")
        tester = GatedTester()
        executor = make_executor(provider, tester, hub, registry=registry)

        task = asyncio.create_task(executor.run("op-1", "db-primary", schedule_id=schedule.id))
        await tester.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = await hub.current_state("op-1")
        assert state.status == RunStatus.CANCELLED
        assert (await registry.get(schedule.id)).last_run_outcome == RunStatus.CANCELLED


class TestExecutorBookkeeping:

    @pytest.mark.asyncio
    async def test_scheduled_run_updates_registry(self, provider, hub, registry, clock):
        schedule = await registry.create("db-primary", "*/15 * * * *")
        clock.set(utc(2024, 3, 4, 10, 15, 2))
        assert await registry.claim(schedule.id, "op-1", lease_seconds=90)
        executor = make_executor(
            provider, ScriptedTester(clock=clock, latency_seconds=3), hub, registry=registry, clock=clock
        )

        await executor.run("op-1", "db-primary", schedule_id=schedule.id, trigger=RunTrigger.SCHEDULE)

        updated = await registry.get(schedule.id)
        assert updated.active_operation_id is None
        assert updated.last_run_outcome == RunStatus.SUCCEEDED
        assert updated.last_run_duration_ms == 3000
        assert updated.next_due_at == utc(2024, 3, 4, 10, 30)

        runs = await registry.recent_runs(schedule.id)
        assert len(runs) == 1
        assert runs[0].operation_id == "op-1"
        assert runs[0].status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_report_failure_after_terminal_event(self, provider, hub, registry):
        schedule = await registry.create("db-primary", "*/15 * * * *")
        executor = make_executor(provider, ScriptedTester(), hub, registry=registry)
        await executor.run("op-1", "db-primary", schedule_id=schedule.id)

        outcome = await executor.report_failure("op-1", "db-primary", schedule.id, RuntimeError("late fault"))

        assert outcome.status == RunStatus.FAILED
        # Hub keeps the first terminal snapshot
        assert (await hub.current_state("op-1")).status == RunStatus.SUCCEEDED
        assert (await registry.get(schedule.id)).last_run_outcome == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_metrics(self, provider, hub):
        metrics = SchedulingMetrics()
        executor = make_executor(provider, ScriptedTester(), hub, metrics=metrics)

        await executor.run("op-1", "db-primary")
        await executor.run("op-2", "missing")

        collector = metrics.collector
        assert collector.get_counter('pulse_runs_completed_total', {'status': 'succeeded'}) == 1
        assert collector.get_counter('pulse_runs_completed_total', {'status': 'failed'}) == 1
