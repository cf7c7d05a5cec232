"""Schedule registry: lifecycle, due scan and claims for recurring checks.

The registry is the single source of truth for whether a schedule is due and
whether a run is in flight. Dispatchers hold no authoritative state of their
own and may be restarted or run redundantly against the same store.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..exceptions import NotFound
from .cron import CronEvaluator
from .models import (
    Clock, Outcome, RunRecord, RunTrigger, Schedule, ensure_utc, utc_now
)
from .store import ScheduleStore


logger = logging.getLogger(__name__)


class ScheduleRegistry:
    """Owns schedule create/update/delete and the atomic run claim."""

    def __init__(
        self,
        store: ScheduleStore,
        cron_evaluator: Optional[CronEvaluator] = None,
        clock: Optional[Clock] = None,
        history_limit: int = 20
    ):
        """Initialize schedule registry.

        Args:
            store: Durable backend for schedules and run history
            cron_evaluator: Evaluator used to derive next_due_at
            clock: Callable returning the current UTC time
            history_limit: Number of runs retained per schedule
        """
        self.store = store
        self.cron = cron_evaluator or CronEvaluator()
        self.clock = clock or utc_now
        self.history_limit = history_limit

        self._edit_locks: Dict[str, asyncio.Lock] = {}

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _lock_for(self, schedule_id: str) -> asyncio.Lock:
        lock = self._edit_locks.get(schedule_id)
        if lock is None:
            lock = asyncio.Lock()
            self._edit_locks[schedule_id] = lock
        return lock

    def _next_due(self, cron_expression: str, enabled: bool, now: datetime) -> Optional[datetime]:
        if not enabled:
            return None
        return self.cron.next_occurrence(cron_expression, now)

    async def create(
        self,
        resource_id: str,
        cron_expression: str,
        enabled: bool = True
    ) -> Schedule:
        """Create a schedule for a resource.

        Raises:
            InvalidExpression: If the cron expression is invalid
        """
        cron_expression = (cron_expression or "").strip()
        self.cron.validate(cron_expression)

        now = self._now()
        schedule = Schedule(
            resource_id=resource_id,
            cron_expression=cron_expression,
            enabled=enabled,
            next_due_at=self._next_due(cron_expression, enabled, now),
            created_at=now,
            updated_at=now,
        )
        created = await self.store.insert(schedule)
        logger.info(
            f"Created schedule {created.id} for resource {resource_id} "
            f"({cron_expression}, enabled={enabled})"
        )
        return created

    async def get(self, schedule_id: str) -> Schedule:
        """Get a schedule.

        Raises:
            NotFound: If the schedule does not exist
        """
        schedule = await self.store.get(schedule_id)
        if schedule is None:
            raise NotFound("Schedule", schedule_id)
        return schedule

    async def list(self, resource_id: Optional[str] = None) -> List[Schedule]:
        """List schedules, optionally for a single resource."""
        return await self.store.list(resource_id)

    async def update(
        self,
        schedule_id: str,
        cron_expression: Optional[str] = None,
        enabled: Optional[bool] = None
    ) -> Schedule:
        """Update expression and/or enabled flag.

        A changed expression or a flip to enabled recomputes next_due_at from
        now. A flip to disabled clears next_due_at; an in-flight run is left
        to finish.

        Raises:
            InvalidExpression: If the new expression is invalid
            NotFound: If the schedule does not exist
        """
        if cron_expression is not None:
            cron_expression = cron_expression.strip()
            self.cron.validate(cron_expression)

        return await self._apply_update(schedule_id, cron_expression, enabled)

    async def _apply_update(
        self,
        schedule_id: str,
        cron_expression: Optional[str],
        enabled: Optional[bool],
        toggle: bool = False
    ) -> Schedule:
        async with self._lock_for(schedule_id):
            current = await self.get(schedule_id)

            new_expression = cron_expression if cron_expression is not None else current.cron_expression
            if toggle:
                new_enabled = not current.enabled
            else:
                new_enabled = enabled if enabled is not None else current.enabled
            expression_changed = new_expression != current.cron_expression
            now = self._now()

            if not new_enabled:
                next_due_at = None
            elif expression_changed or not current.enabled or current.next_due_at is None:
                next_due_at = self._next_due(new_expression, True, now)
            else:
                next_due_at = current.next_due_at

            updated = await self.store.update_definition(
                schedule_id, new_expression, new_enabled, next_due_at, now
            )
            if updated is None:
                raise NotFound("Schedule", schedule_id)

        logger.info(
            f"Updated schedule {schedule_id}: expression={new_expression}, "
            f"enabled={new_enabled}, next_due_at={next_due_at}"
        )
        return updated

    async def set_enabled(self, schedule_id: str, enabled: bool) -> Schedule:
        """Enable or disable a schedule."""
        return await self.update(schedule_id, enabled=enabled)

    async def toggle(self, schedule_id: str) -> Schedule:
        """Flip a schedule's enabled flag."""
        return await self._apply_update(schedule_id, None, None, toggle=True)

    async def delete(self, schedule_id: str) -> None:
        """Delete a schedule.

        Raises:
            NotFound: If the schedule does not exist
        """
        async with self._lock_for(schedule_id):
            deleted = await self.store.delete(schedule_id)
        if not deleted:
            raise NotFound("Schedule", schedule_id)
        self._edit_locks.pop(schedule_id, None)
        logger.info(f"Deleted schedule {schedule_id}")

    async def due_schedules(self, now: Optional[datetime] = None) -> List[Schedule]:
        """Schedules that are enabled, due at `now` and not running."""
        now = ensure_utc(now) if now is not None else self._now()
        return await self.store.find_due(now)

    async def claim(
        self,
        schedule_id: str,
        operation_id: str,
        lease_seconds: float,
        now: Optional[datetime] = None
    ) -> bool:
        """Atomically claim a schedule for one run.

        The claim lapses after `lease_seconds` so that a crashed worker does
        not block the schedule forever.

        Returns:
            True if the claim was won, False if another run holds it
        """
        now = ensure_utc(now) if now is not None else self._now()
        expires_at = now + timedelta(seconds=lease_seconds)
        claimed = await self.store.try_claim(schedule_id, operation_id, now, expires_at)
        if claimed:
            logger.debug(f"Claimed schedule {schedule_id} for operation {operation_id}")
        return claimed

    async def release_claim(self, schedule_id: str, operation_id: str) -> bool:
        """Release a claim that never turned into a run."""
        released = await self.store.release_claim(schedule_id, operation_id)
        if released:
            logger.debug(f"Released claim on schedule {schedule_id} ({operation_id})")
        return released

    async def renew_claim(
        self,
        schedule_id: str,
        operation_id: str,
        lease_seconds: float
    ) -> bool:
        """Extend a held claim to `lease_seconds` from now.

        Returns:
            False if the claim is no longer held by operation_id
        """
        expires_at = self._now() + timedelta(seconds=lease_seconds)
        return await self.store.renew_claim(schedule_id, operation_id, expires_at)

    async def record_run_start(
        self,
        schedule_id: str,
        operation_id: str,
        trigger: RunTrigger = RunTrigger.SCHEDULE,
        resource_id: Optional[str] = None
    ) -> None:
        """Record that a run has started executing."""
        now = self._now()
        schedule = await self.store.mark_run_started(schedule_id, operation_id, now)
        if schedule is None:
            logger.warning(f"Run {operation_id} started for unknown schedule {schedule_id}")
            return

        await self.store.append_run(
            RunRecord(
                operation_id=operation_id,
                schedule_id=schedule_id,
                resource_id=resource_id or schedule.resource_id,
                trigger=trigger,
                started_at=now,
            ),
            self.history_limit,
        )

    async def record_run_result(
        self,
        schedule_id: str,
        operation_id: str,
        outcome: Outcome
    ) -> Optional[Schedule]:
        """Record a run's outcome, release its claim and recompute next_due_at.

        next_due_at is recomputed from now, so any occurrences missed while
        the run was queued or executing collapse into the run just finished.
        """
        now = self._now()

        async with self._lock_for(schedule_id):
            current = await self.store.get(schedule_id)
            if current is None:
                logger.warning(
                    f"Discarding result of run {operation_id}: schedule {schedule_id} no longer exists"
                )
                return None

            next_due_at = self._next_due(current.cron_expression, current.enabled, now)
            updated = await self.store.complete_run(
                schedule_id,
                operation_id,
                outcome.status,
                outcome.message,
                outcome.duration_ms,
                now,
                next_due_at,
            )

        await self.store.finish_run(
            operation_id,
            outcome.status,
            now,
            outcome.duration_ms,
            outcome.message,
            outcome.error_code,
        )

        logger.info(
            f"Schedule {schedule_id} run {operation_id} finished: {outcome.status.value} "
            f"in {outcome.duration_ms}ms, next due {next_due_at}"
        )
        return updated

    async def recent_runs(self, schedule_id: str, limit: Optional[int] = None) -> List[RunRecord]:
        """Most recent runs of a schedule, newest first.

        Raises:
            NotFound: If the schedule does not exist
        """
        await self.get(schedule_id)
        return await self.store.list_runs(schedule_id, limit or self.history_limit)
