"""Execution of a single connection test run.

The executor resolves the target resource, invokes the externally supplied
test under a timeout and classifies what happened into an Outcome. Failures of
any kind become outcomes, never raised faults. Each invocation publishes
exactly one terminal event through the broadcast hub and, for runs that belong
to a schedule, records the result in the registry. Retrying is left to the
caller; a failed scheduled run waits for its next due instant.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ..broadcast.hub import BroadcastHub
from ..broadcast.models import ProgressEvent
from ..exceptions import NotFound, PulseError
from ..integrations import ResourceProvider, ResourceTester
from .metrics import SchedulingMetrics
from .models import Clock, Outcome, RunStatus, RunTrigger, ensure_utc, utc_now
from .registry import ScheduleRegistry


logger = logging.getLogger(__name__)


def _consume_result(task: asyncio.Future) -> None:
    """Retrieve the result of an abandoned test so its errors are not reported as unhandled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned connection test finished with error: {exc}")


class Executor:
    """Runs connection tests and reports their outcomes."""

    def __init__(
        self,
        resource_provider: ResourceProvider,
        resource_tester: ResourceTester,
        hub: BroadcastHub,
        registry: Optional[ScheduleRegistry] = None,
        default_timeout_seconds: float = 30,
        clock: Optional[Clock] = None,
        metrics: Optional[SchedulingMetrics] = None
    ):
        """Initialize executor.

        Args:
            resource_provider: Looks up the resource to test
            resource_tester: Runs the connection test
            hub: Hub the run's progress and terminal event are published to
            registry: Registry receiving results of schedule-originated runs
            default_timeout_seconds: Timeout used when a run does not set one
            clock: Callable returning the current UTC time
            metrics: Optional metrics sink
        """
        self.resource_provider = resource_provider
        self.resource_tester = resource_tester
        self.hub = hub
        self.registry = registry
        self.default_timeout_seconds = default_timeout_seconds
        self.clock = clock or utc_now
        self.metrics = metrics

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _elapsed_ms(self, started_at: datetime) -> int:
        return max(0, int((self._now() - started_at).total_seconds() * 1000))

    async def run(
        self,
        operation_id: str,
        resource_id: str,
        timeout: Optional[float] = None,
        schedule_id: Optional[str] = None,
        trigger: RunTrigger = RunTrigger.SCHEDULE
    ) -> Outcome:
        """Execute one connection test run.

        Args:
            operation_id: Id the run's events are published under
            resource_id: Resource to test
            timeout: Seconds to wait for the test (default: executor default)
            schedule_id: Owning schedule, None for ad hoc runs
            trigger: What started the run

        Returns:
            Classified outcome of the run
        """
        timeout = timeout if timeout is not None else self.default_timeout_seconds
        started_at = self._now()

        if schedule_id is not None and self.registry is not None:
            await self.registry.record_run_start(schedule_id, operation_id, trigger, resource_id)

        await self._publish(operation_id, ProgressEvent(
            status=RunStatus.RUNNING,
            percentage=0.0,
            current_step="Testing connection",
            message=f"Testing resource {resource_id}",
        ))

        try:
            outcome = await self._execute(operation_id, resource_id, timeout, started_at)
        except asyncio.CancelledError:
            outcome = Outcome(
                status=RunStatus.CANCELLED,
                success=False,
                duration_ms=self._elapsed_ms(started_at),
                message="Run was cancelled",
                error_code="cancelled",
            )
            logger.info(f"Run {operation_id} for resource {resource_id} was cancelled")
            await self._finish(operation_id, resource_id, schedule_id, outcome)
            raise

        await self._finish(operation_id, resource_id, schedule_id, outcome)
        return outcome

    async def _execute(
        self,
        operation_id: str,
        resource_id: str,
        timeout: float,
        started_at: datetime
    ) -> Outcome:
        try:
            descriptor = await self.resource_provider.get_resource(resource_id)
        except NotFound as e:
            return Outcome(
                status=RunStatus.FAILED,
                success=False,
                duration_ms=self._elapsed_ms(started_at),
                message=e.message,
                error_code="resource_not_found",
                error_details=e.details,
            )
        except Exception as e:
            logger.error(f"Resource lookup for run {operation_id} failed: {e}", exc_info=True)
            return self._failure(e, started_at)

        task = asyncio.ensure_future(self.resource_tester.test_resource(descriptor))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            task.add_done_callback(_consume_result)
            raise

        if not done:
            # Stop waiting; the test itself may ignore the cancellation
            task.cancel()
            task.add_done_callback(_consume_result)
            logger.warning(f"Run {operation_id} for resource {resource_id} timed out after {timeout}s")
            return Outcome(
                status=RunStatus.TIMED_OUT,
                success=False,
                duration_ms=self._elapsed_ms(started_at),
                message=f"Connection test exceeded the {timeout:g}s timeout",
                error_code="timeout",
                error_details={"timeout_seconds": timeout},
            )

        if task.cancelled():
            return Outcome(
                status=RunStatus.CANCELLED,
                success=False,
                duration_ms=self._elapsed_ms(started_at),
                message="Connection test was cancelled",
                error_code="cancelled",
            )

        exc = task.exception()
        if exc is not None:
            logger.error(f"Connection test for run {operation_id} raised: {exc}", exc_info=exc)
            return self._failure(exc, started_at)

        result = task.result()
        if result.success:
            return Outcome(
                status=RunStatus.SUCCEEDED,
                success=True,
                duration_ms=self._elapsed_ms(started_at),
                message=result.message or "Connection test succeeded",
                server_info=result.server_info,
            )

        return Outcome(
            status=RunStatus.FAILED,
            success=False,
            duration_ms=self._elapsed_ms(started_at),
            message=result.message or "Connection test failed",
            error_code=result.error_code or "test_failed",
            error_details=result.error_details,
            server_info=result.server_info,
        )

    async def report_failure(
        self,
        operation_id: str,
        resource_id: str,
        schedule_id: Optional[str],
        error: Exception
    ) -> Outcome:
        """Record a fault raised outside the test itself as a failed run.

        If a terminal event was already published for the operation the hub
        rejects the duplicate and only the registry is updated.
        """
        outcome = self._failure(error, self._now())
        await self._finish(operation_id, resource_id, schedule_id, outcome)
        return outcome

    def _failure(self, exc: BaseException, started_at: datetime) -> Outcome:
        return Outcome(
            status=RunStatus.FAILED,
            success=False,
            duration_ms=self._elapsed_ms(started_at),
            message=str(exc) or type(exc).__name__,
            error_code="execution_failure",
            error_details={"exception_type": type(exc).__name__},
        )

    async def _finish(
        self,
        operation_id: str,
        resource_id: str,
        schedule_id: Optional[str],
        outcome: Outcome
    ) -> None:
        """Publish the terminal event and record the result."""
        await self._publish(operation_id, ProgressEvent(
            status=outcome.status,
            current_step="Completed",
            message=outcome.message,
            errors=[outcome.message] if not outcome.success and outcome.message else [],
            outcome=outcome,
        ))

        if schedule_id is not None and self.registry is not None:
            await self.registry.record_run_result(schedule_id, operation_id, outcome)

        if self.metrics:
            self.metrics.increment_runs_completed(outcome.status.value)
            self.metrics.record_run_duration(outcome.duration_ms / 1000.0, outcome.status.value)

        logger.info(
            f"Run {operation_id} for resource {resource_id} finished: "
            f"{outcome.status.value} ({outcome.duration_ms}ms)"
        )

    async def _publish(self, operation_id: str, event: ProgressEvent) -> None:
        try:
            await self.hub.publish(operation_id, event)
        except PulseError as e:
            logger.warning(f"Hub rejected event for operation {operation_id}: {e.message}")
