"""Dispatcher: turns due schedules into claimed runs on a bounded worker pool.

Each tick asks the registry for due schedules and claims each one before
queueing it. A schedule that is claimed but waiting for a free worker keeps its
claim, so it never re-enters the due scan. The loop itself never waits for a
run to finish; workers own execution and the executor owns timeouts.

The dispatcher holds no authoritative state. Claims live in the registry, so
several dispatchers may share one store and the loop can be restarted freely.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .executor import Executor
from .metrics import SchedulingMetrics
from .models import RunTrigger, new_operation_id, utc_now
from .registry import ScheduleRegistry


logger = logging.getLogger(__name__)


@dataclass
class ClaimedRun:
    """A run whose schedule claim is held, waiting for a worker."""

    operation_id: str
    resource_id: str
    schedule_id: Optional[str] = None
    trigger: RunTrigger = RunTrigger.SCHEDULE
    timeout_seconds: Optional[float] = None
    claimed_at: datetime = field(default_factory=utc_now)


@dataclass
class DispatcherStats:
    """Statistics for dispatcher operations."""

    ticks: int = 0
    schedules_claimed: int = 0
    claim_conflicts: int = 0
    runs_started: int = 0
    runs_abandoned: int = 0
    worker_errors: int = 0
    last_tick_time: Optional[datetime] = None
    average_tick_duration_ms: float = 0.0


class Dispatcher:
    """Polling loop feeding due schedules to the executor."""

    def __init__(
        self,
        registry: ScheduleRegistry,
        executor: Executor,
        poll_interval_seconds: float = 5,
        max_concurrent_runs: int = 10,
        run_timeout_seconds: float = 30,
        claim_grace_seconds: float = 60,
        metrics: Optional[SchedulingMetrics] = None
    ):
        """Initialize dispatcher.

        Args:
            registry: Source of due schedules and claims
            executor: Runs claimed schedules
            poll_interval_seconds: Seconds between ticks
            max_concurrent_runs: Size of the worker pool
            run_timeout_seconds: Timeout passed to each run
            claim_grace_seconds: Extra lease on top of the run timeout before
                a claim from a crashed worker lapses
            metrics: Optional metrics sink
        """
        if max_concurrent_runs < 1:
            raise ValueError("max_concurrent_runs must be at least 1")

        self.registry = registry
        self.executor = executor
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_runs = max_concurrent_runs
        self.run_timeout_seconds = run_timeout_seconds
        self.claim_grace_seconds = claim_grace_seconds
        self.metrics = metrics

        self._queue: "asyncio.Queue[ClaimedRun]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._loop_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._active_runs: Dict[str, ClaimedRun] = {}
        # Claimed runs still waiting for a worker, by operation id
        self._queued_runs: Dict[str, ClaimedRun] = {}

        self._stats = DispatcherStats()
        self._tick_times: List[float] = []
        self._max_tick_samples = 100

    @property
    def lease_seconds(self) -> float:
        return self.run_timeout_seconds + self.claim_grace_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def running_count(self) -> int:
        return len(self._active_runs)

    def get_stats(self) -> DispatcherStats:
        return self._stats

    async def start(self) -> None:
        """Start the worker pool and the polling loop."""
        if self._running:
            logger.warning("Dispatcher is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._workers = [
            asyncio.create_task(self._worker(index))
            for index in range(self.max_concurrent_runs)
        ]
        self._loop_task = asyncio.create_task(self._dispatch_loop())

        logger.info(
            f"Dispatcher started (poll interval: {self.poll_interval_seconds}s, "
            f"workers: {self.max_concurrent_runs})"
        )

    async def stop(self) -> None:
        """Stop polling, release queued claims and cancel running runs."""
        if not self._running:
            return

        logger.info("Stopping dispatcher")
        self._running = False
        self._shutdown_event.set()

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        released = 0
        while not self._queue.empty():
            claimed = self._queue.get_nowait()
            self._queued_runs.pop(claimed.operation_id, None)
            self._queue.task_done()
            if claimed.schedule_id is not None:
                if await self.registry.release_claim(claimed.schedule_id, claimed.operation_id):
                    released += 1
        if released:
            logger.info(f"Released {released} queued claims")

        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers = []

        logger.info("Dispatcher stopped")

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Claim every due schedule and queue it for execution.

        A schedule whose claim is lost to another dispatcher or a manual run is
        skipped. Errors on one schedule never stop the others.

        Returns:
            Number of schedules claimed
        """
        await self._renew_queued_claims()

        due = await self.registry.due_schedules(now)
        if not due:
            return 0

        logger.debug(f"Processing {len(due)} due schedules")
        claimed_count = 0

        for schedule in due:
            try:
                operation_id = new_operation_id()
                won = await self.registry.claim(
                    schedule.id, operation_id, self.lease_seconds, now
                )
                if self.metrics:
                    self.metrics.increment_claims(won)

                if not won:
                    self._stats.claim_conflicts += 1
                    logger.debug(f"Schedule {schedule.id} already claimed, skipping")
                    continue

                self.submit(ClaimedRun(
                    operation_id=operation_id,
                    resource_id=schedule.resource_id,
                    schedule_id=schedule.id,
                    trigger=RunTrigger.SCHEDULE,
                    timeout_seconds=self.run_timeout_seconds,
                ))
                self._stats.schedules_claimed += 1
                claimed_count += 1

            except Exception as e:
                logger.error(f"Error dispatching schedule {schedule.id}: {e}", exc_info=True)
                if self.metrics:
                    self.metrics.record_dispatch_error(type(e).__name__)

        return claimed_count

    async def _renew_queued_claims(self) -> None:
        """Extend the leases of claimed runs still waiting for a worker.

        A queued schedule keeps its claim for as long as it waits, so it never
        re-enters the due scan while the pool is busy.
        """
        for claimed in list(self._queued_runs.values()):
            if claimed.schedule_id is None:
                continue
            try:
                held = await self.registry.renew_claim(
                    claimed.schedule_id, claimed.operation_id, self.lease_seconds
                )
                if not held:
                    logger.warning(
                        f"Claim on queued schedule {claimed.schedule_id} "
                        f"({claimed.operation_id}) was lost"
                    )
            except Exception as e:
                logger.error(
                    f"Error renewing claim on queued schedule {claimed.schedule_id}: {e}",
                    exc_info=True
                )
                if self.metrics:
                    self.metrics.record_dispatch_error(type(e).__name__)

    def submit(self, claimed: ClaimedRun) -> None:
        """Queue a claimed run for the worker pool."""
        self._queued_runs[claimed.operation_id] = claimed
        self._queue.put_nowait(claimed)
        if self.metrics:
            self.metrics.set_queue_depth(self._queue.qsize())

    async def _dispatch_loop(self) -> None:
        """Main loop that ticks at the poll interval."""
        logger.info("Starting dispatch loop")

        while self._running:
            try:
                tick_start = time.monotonic()

                claimed = await self.tick()
                if claimed:
                    logger.info(f"Dispatched {claimed} due schedules")

                tick_duration = (time.monotonic() - tick_start) * 1000
                self._tick_times.append(tick_duration)
                if len(self._tick_times) > self._max_tick_samples:
                    self._tick_times.pop(0)

                self._stats.ticks += 1
                self._stats.last_tick_time = utc_now()
                self._stats.average_tick_duration_ms = sum(self._tick_times) / len(self._tick_times)

                if self.metrics:
                    self.metrics.record_tick_duration(tick_duration)

                # Wait for next tick or shutdown
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.poll_interval_seconds
                    )
                    break
                except asyncio.TimeoutError:
                    continue

            except Exception as e:
                logger.error(f"Error in dispatch loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _worker(self, index: int) -> None:
        """Worker pulling claimed runs off the queue."""
        while True:
            claimed = await self._queue.get()
            self._queued_runs.pop(claimed.operation_id, None)
            try:
                if self.metrics:
                    self.metrics.set_queue_depth(self._queue.qsize())
                await self._execute(claimed)
            except Exception as e:
                self._stats.worker_errors += 1
                logger.error(
                    f"Worker {index} failed running operation {claimed.operation_id}: {e}",
                    exc_info=True
                )
                if self.metrics:
                    self.metrics.record_dispatch_error(type(e).__name__)
                await self._record_failure(claimed, e)
            finally:
                self._active_runs.pop(claimed.operation_id, None)
                self._queue.task_done()
                if self.metrics:
                    self.metrics.set_running_runs(len(self._active_runs))

    async def _execute(self, claimed: ClaimedRun) -> None:
        if claimed.schedule_id is not None:
            # The claim may have lapsed while queued; only run if still ours
            held = await self.registry.renew_claim(
                claimed.schedule_id, claimed.operation_id, self.lease_seconds
            )
            if not held:
                self._stats.runs_abandoned += 1
                logger.warning(
                    f"Claim on schedule {claimed.schedule_id} lost before operation "
                    f"{claimed.operation_id} started, skipping"
                )
                return

        self._active_runs[claimed.operation_id] = claimed
        self._stats.runs_started += 1
        if self.metrics:
            self.metrics.increment_runs_dispatched(claimed.trigger.value)
            self.metrics.set_running_runs(len(self._active_runs))

        await self.executor.run(
            claimed.operation_id,
            claimed.resource_id,
            timeout=claimed.timeout_seconds,
            schedule_id=claimed.schedule_id,
            trigger=claimed.trigger,
        )

    async def _record_failure(self, claimed: ClaimedRun, error: Exception) -> None:
        """Convert an executor fault into a failed outcome."""
        try:
            await self.executor.report_failure(
                claimed.operation_id, claimed.resource_id, claimed.schedule_id, error
            )
        except Exception as e:
            logger.error(
                f"Could not record failure of operation {claimed.operation_id} "
                f"on schedule {claimed.schedule_id}: {e}"
            )

    async def wait_idle(self) -> None:
        """Wait until every queued run has been processed."""
        await self._queue.join()

    def health(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'queue_depth': self.queue_depth,
            'active_runs': self.running_count,
            'workers': len(self._workers),
            'ticks': self._stats.ticks,
            'last_tick_time': self._stats.last_tick_time.isoformat() if self._stats.last_tick_time else None,
        }
