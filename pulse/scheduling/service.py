"""Service lifecycle management and the public operations of Pulse.

SchedulingService wires the registry, dispatcher, executor and broadcast hub
together and is the single entry point used by the API: schedule CRUD,
manual runs, operation subscriptions and progress publishing. Authorization
is checked here, before any schedule mutation, manual run or join.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..broadcast.hub import BroadcastHub
from ..broadcast.models import ProgressEvent, ProgressSnapshot
from ..broadcast.transport import QueueTransport, Transport
from ..config import PulseConfig
from ..exceptions import AccessDenied, AlreadyRunning
from ..integrations import (
    AllowAllAuthorizer, Authorizer, ResourceProvider, ResourceTester,
    StaticResourceProvider, TcpConnectResourceTester
)
from .cron import CronEvaluator
from .dispatch import Dispatcher
from .executor import Executor
from .metrics import MetricsCollector, SchedulingMetrics
from .models import (
    Clock, CronPreset, CronValidation, RunRecord, RunTrigger, Schedule,
    new_operation_id
)
from .registry import ScheduleRegistry
from .store import InMemoryScheduleStore, ScheduleStore


logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    """Service lifecycle status."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceHealth:
    """Health status of the service."""
    status: ServiceStatus
    uptime_seconds: float
    runs_queued: int
    runs_running: int
    manual_runs: int
    last_error: Optional[str] = None
    component_status: Dict[str, Any] = field(default_factory=dict)


class SchedulingService:
    """High-level service owning the complete Pulse lifecycle."""

    _OPERATION_INDEX_SIZE = 1000

    def __init__(
        self,
        registry: ScheduleRegistry,
        hub: BroadcastHub,
        executor: Executor,
        dispatcher: Dispatcher,
        authorizer: Optional[Authorizer] = None,
        config: Optional[PulseConfig] = None,
        metrics_collector: Optional[MetricsCollector] = None
    ):
        """Initialize the service.

        Args:
            registry: Schedule registry
            hub: Broadcast hub for operation progress
            executor: Executor running connection tests
            dispatcher: Dispatcher feeding due schedules to the executor
            authorizer: Authorization collaborator (default: allow all)
            config: Service configuration
            metrics_collector: Collector backing the scheduling metrics
        """
        self.registry = registry
        self.hub = hub
        self.executor = executor
        self.dispatcher = dispatcher
        self.authorizer = authorizer or AllowAllAuthorizer()
        self.config = config or PulseConfig()
        self.metrics_collector = metrics_collector

        self._status = ServiceStatus.STOPPED
        self._start_time: Optional[float] = None
        self._last_error: Optional[str] = None

        self._manual_tasks: Set[asyncio.Task] = set()
        # Manual runs share a pool as large as the dispatcher's worker pool
        self._manual_slots = asyncio.Semaphore(self.config.dispatch.max_concurrent_runs)
        self._adhoc_runs: Dict[str, str] = {}
        self._operation_resources: "OrderedDict[str, str]" = OrderedDict()

    @property
    def cron(self) -> CronEvaluator:
        return self.registry.cron

    async def start(self) -> None:
        """Start the hub sweep and, if configured, the dispatcher."""
        if self._status == ServiceStatus.RUNNING:
            return

        logger.info("Starting Pulse service")
        self._status = ServiceStatus.STARTING

        try:
            initialize = getattr(self.registry.store, "initialize", None)
            if initialize is not None:
                await initialize()

            await self.hub.start()
            if self.config.start_dispatcher:
                await self.dispatcher.start()

            self._status = ServiceStatus.RUNNING
            self._start_time = asyncio.get_running_loop().time()
            logger.info("Pulse service started successfully")

        except Exception as e:
            self._last_error = str(e)
            self._status = ServiceStatus.ERROR
            logger.error(f"Failed to start Pulse service: {e}", exc_info=True)
            raise

    async def stop(self) -> None:
        """Stop the dispatcher, cancel manual runs and close the store."""
        if self._status == ServiceStatus.STOPPED:
            return

        logger.info("Stopping Pulse service")
        self._status = ServiceStatus.STOPPING

        try:
            await self.dispatcher.stop()

            for task in list(self._manual_tasks):
                task.cancel()
            if self._manual_tasks:
                await asyncio.gather(*self._manual_tasks, return_exceptions=True)

            await self.hub.stop()
            await self.registry.store.close()

            self._status = ServiceStatus.STOPPED
            logger.info("Pulse service stopped")

        except Exception as e:
            self._last_error = str(e)
            self._status = ServiceStatus.ERROR
            logger.error(f"Error stopping Pulse service: {e}", exc_info=True)
            raise

    def get_status(self) -> ServiceStatus:
        return self._status

    async def get_health(self) -> ServiceHealth:
        """Get service health information."""
        uptime = 0.0
        if self._start_time is not None:
            uptime = asyncio.get_running_loop().time() - self._start_time

        try:
            store_health = await self.registry.store.health_check()
        except Exception as e:
            store_health = {'status': 'error', 'error': str(e)}

        return ServiceHealth(
            status=self._status,
            uptime_seconds=uptime,
            runs_queued=self.dispatcher.queue_depth,
            runs_running=self.dispatcher.running_count,
            manual_runs=len(self._manual_tasks),
            last_error=self._last_error,
            component_status={
                'store': store_health,
                'dispatcher': self.dispatcher.health(),
                'hub': self.hub.health(),
            },
        )

    # ============= Authorization =============

    async def _authorize(self, principal: str, action: str, resource_id: Optional[str]) -> None:
        if not await self.authorizer.authorize(principal, action, resource_id):
            logger.info(f"Denied {action} on {resource_id} for principal {principal}")
            raise AccessDenied(principal, action, resource_id)

    # ============= Schedules =============

    async def create_schedule(
        self,
        principal: str,
        resource_id: str,
        cron_expression: str,
        enabled: bool = True
    ) -> Schedule:
        await self._authorize(principal, "schedule:write", resource_id)
        return await self.registry.create(resource_id, cron_expression, enabled)

    async def save_resource_schedule(
        self,
        principal: str,
        resource_id: str,
        cron_expression: str,
        enabled: bool = True
    ) -> Schedule:
        """Create the resource's schedule, or update it if one exists."""
        await self._authorize(principal, "schedule:write", resource_id)
        existing = await self.registry.list(resource_id)
        if existing:
            return await self.registry.update(existing[0].id, cron_expression, enabled)
        return await self.registry.create(resource_id, cron_expression, enabled)

    async def get_schedule(self, principal: str, schedule_id: str) -> Schedule:
        schedule = await self.registry.get(schedule_id)
        await self._authorize(principal, "schedule:read", schedule.resource_id)
        return schedule

    async def list_schedules(self, principal: str, resource_id: Optional[str] = None) -> List[Schedule]:
        """List schedules the principal may read."""
        if resource_id is not None:
            await self._authorize(principal, "schedule:read", resource_id)
            return await self.registry.list(resource_id)

        visible = []
        for schedule in await self.registry.list():
            if await self.authorizer.authorize(principal, "schedule:read", schedule.resource_id):
                visible.append(schedule)
        return visible

    async def update_schedule(
        self,
        principal: str,
        schedule_id: str,
        cron_expression: Optional[str] = None,
        enabled: Optional[bool] = None
    ) -> Schedule:
        schedule = await self.registry.get(schedule_id)
        await self._authorize(principal, "schedule:write", schedule.resource_id)
        return await self.registry.update(schedule_id, cron_expression, enabled)

    async def toggle_schedule(self, principal: str, schedule_id: str) -> Schedule:
        schedule = await self.registry.get(schedule_id)
        await self._authorize(principal, "schedule:write", schedule.resource_id)
        return await self.registry.toggle(schedule_id)

    async def delete_schedule(self, principal: str, schedule_id: str) -> None:
        schedule = await self.registry.get(schedule_id)
        await self._authorize(principal, "schedule:write", schedule.resource_id)
        await self.registry.delete(schedule_id)

    async def delete_resource_schedules(self, principal: str, resource_id: str) -> int:
        """Delete every schedule of a resource, e.g. when the resource is removed."""
        await self._authorize(principal, "schedule:write", resource_id)
        schedules = await self.registry.list(resource_id)
        for schedule in schedules:
            await self.registry.delete(schedule.id)
        return len(schedules)

    async def recent_runs(self, principal: str, schedule_id: str) -> List[RunRecord]:
        schedule = await self.registry.get(schedule_id)
        await self._authorize(principal, "schedule:read", schedule.resource_id)
        return await self.registry.recent_runs(schedule_id)

    def validate_cron(self, cron_expression: str) -> CronValidation:
        return self.cron.validate_expression(cron_expression)

    def cron_presets(self) -> List[CronPreset]:
        return self.cron.presets()

    # ============= Manual runs =============

    async def run_now(self, principal: str, schedule_id: str) -> str:
        """Run a schedule immediately, bypassing the due check.

        Returns:
            Operation id the run reports under

        Raises:
            NotFound: If the schedule does not exist
            AlreadyRunning: If the schedule has an active run
        """
        schedule = await self.registry.get(schedule_id)
        await self._authorize(principal, "run", schedule.resource_id)

        operation_id = new_operation_id()
        claimed = await self.registry.claim(schedule_id, operation_id, self.dispatcher.lease_seconds)
        if not claimed:
            current = await self.registry.get(schedule_id)
            raise AlreadyRunning(schedule_id, current.active_operation_id)

        self._remember_operation(operation_id, schedule.resource_id)
        self._spawn_run(operation_id, schedule.resource_id, schedule_id)
        logger.info(f"Manual run {operation_id} started for schedule {schedule_id}")
        return operation_id

    async def run_now_for_resource(self, principal: str, resource_id: str) -> str:
        """Run a resource's connection test immediately.

        Uses the resource's schedule when it has one, so the run counts
        against that schedule's single active run. Otherwise the run is ad
        hoc, still limited to one at a time per resource.

        Raises:
            NotFound: If the resource does not exist
            AlreadyRunning: If a run for the resource is active
        """
        schedules = await self.registry.list(resource_id)
        if schedules:
            return await self.run_now(principal, schedules[0].id)

        await self._authorize(principal, "run", resource_id)
        await self.executor.resource_provider.get_resource(resource_id)

        if resource_id in self._adhoc_runs:
            raise AlreadyRunning(resource_id, self._adhoc_runs[resource_id])

        operation_id = new_operation_id()
        self._adhoc_runs[resource_id] = operation_id
        self._remember_operation(operation_id, resource_id)
        self._spawn_run(operation_id, resource_id, None)
        logger.info(f"Ad hoc run {operation_id} started for resource {resource_id}")
        return operation_id

    def _spawn_run(self, operation_id: str, resource_id: str, schedule_id: Optional[str]) -> None:
        task = asyncio.create_task(self._manual_run(operation_id, resource_id, schedule_id))
        self._manual_tasks.add(task)
        task.add_done_callback(self._manual_tasks.discard)

    async def _manual_run(self, operation_id: str, resource_id: str, schedule_id: Optional[str]) -> None:
        try:
            async with self._manual_slots:
                if schedule_id is not None:
                    # The lease may have run out while waiting for a slot
                    held = await self.registry.renew_claim(
                        schedule_id, operation_id, self.dispatcher.lease_seconds
                    )
                    if not held:
                        logger.warning(
                            f"Claim on schedule {schedule_id} lost before manual run "
                            f"{operation_id} started, skipping"
                        )
                        return
                await self.executor.run(
                    operation_id,
                    resource_id,
                    timeout=self.dispatcher.run_timeout_seconds,
                    schedule_id=schedule_id,
                    trigger=RunTrigger.MANUAL,
                )
        except Exception as e:
            logger.error(f"Manual run {operation_id} failed: {e}", exc_info=True)
            try:
                await self.executor.report_failure(operation_id, resource_id, schedule_id, e)
            except Exception as report_error:
                logger.error(f"Could not record failure of manual run {operation_id}: {report_error}")
        finally:
            if self._adhoc_runs.get(resource_id) == operation_id:
                del self._adhoc_runs[resource_id]

    async def wait_for_manual_runs(self) -> None:
        """Wait until every manual run started so far has finished."""
        if self._manual_tasks:
            await asyncio.gather(*list(self._manual_tasks), return_exceptions=True)

    def _remember_operation(self, operation_id: str, resource_id: str) -> None:
        self._operation_resources[operation_id] = resource_id
        while len(self._operation_resources) > self._OPERATION_INDEX_SIZE:
            self._operation_resources.popitem(last=False)

    # ============= Operations =============

    async def join(self, principal: str, operation_id: str, observer_id: str) -> Optional[ProgressSnapshot]:
        """Subscribe an observer to an operation's progress.

        Returns:
            Current snapshot, if any, to be pushed to the observer first
        """
        await self._authorize(principal, "join", self._operation_resources.get(operation_id))
        return await self.hub.join(operation_id, observer_id)

    async def leave(self, operation_id: str, observer_id: str) -> None:
        await self.hub.leave(operation_id, observer_id)

    async def disconnect(self, observer_id: str) -> int:
        """Drop every subscription of a disconnected observer."""
        return await self.hub.leave_all(observer_id)

    async def current_state(self, principal: str, operation_id: str) -> ProgressSnapshot:
        await self._authorize(principal, "join", self._operation_resources.get(operation_id))
        return await self.hub.current_state(operation_id)

    async def publish(self, principal: str, operation_id: str, event: ProgressEvent) -> ProgressSnapshot:
        """Publish progress for an operation owned by an external producer."""
        await self._authorize(principal, "publish", self._operation_resources.get(operation_id))
        return await self.hub.publish(operation_id, event)


def create_service(
    config: Optional[PulseConfig] = None,
    resource_provider: Optional[ResourceProvider] = None,
    resource_tester: Optional[ResourceTester] = None,
    authorizer: Optional[Authorizer] = None,
    store: Optional[ScheduleStore] = None,
    transport: Optional[Transport] = None,
    clock: Optional[Clock] = None
) -> SchedulingService:
    """Create a fully wired service from configuration.

    Args:
        config: Service configuration (default: from environment)
        resource_provider: Resource lookup (default: empty static provider)
        resource_tester: Connection test (default: TCP connect)
        authorizer: Authorization check (default: allow all)
        store: Schedule store (default: SQL when a database URL is configured)
        transport: Observer transport (default: in-process queues)
        clock: Callable returning the current UTC time

    Returns:
        Service ready to be started
    """
    config = config or PulseConfig.from_environment()
    config.validate()

    if store is None:
        if config.database_url:
            from ..persistence.database import DatabaseConfig
            from ..persistence.store import SqlScheduleStore
            store = SqlScheduleStore(DatabaseConfig(url=config.database_url))
        else:
            store = InMemoryScheduleStore()

    collector = MetricsCollector()
    metrics = SchedulingMetrics(collector)

    registry = ScheduleRegistry(
        store,
        CronEvaluator(),
        clock=clock,
        history_limit=config.dispatch.run_history_limit,
    )
    hub = BroadcastHub(
        transport=transport or QueueTransport(config.broadcast.observer_queue_size),
        retention_seconds=config.broadcast.terminal_retention_seconds,
        stale_seconds=config.broadcast.stale_operation_seconds,
        recent_limit=config.broadcast.recent_messages_limit,
        cleanup_interval_seconds=config.broadcast.cleanup_interval_seconds,
        clock=clock,
    )
    executor = Executor(
        resource_provider or StaticResourceProvider(),
        resource_tester or TcpConnectResourceTester(),
        hub,
        registry=registry,
        default_timeout_seconds=config.dispatch.run_timeout_seconds,
        clock=clock,
        metrics=metrics,
    )
    dispatcher = Dispatcher(
        registry,
        executor,
        poll_interval_seconds=config.dispatch.poll_interval_seconds,
        max_concurrent_runs=config.dispatch.max_concurrent_runs,
        run_timeout_seconds=config.dispatch.run_timeout_seconds,
        claim_grace_seconds=config.dispatch.claim_grace_seconds,
        metrics=metrics,
    )

    return SchedulingService(
        registry,
        hub,
        executor,
        dispatcher,
        authorizer=authorizer,
        config=config,
        metrics_collector=collector,
    )
