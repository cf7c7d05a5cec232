"""Durable state backends for schedules and their bounded run history.

Edit fields (expression, enabled flag, next due instant) and run bookkeeping
fields (claim marker, last-run fields) are written through separate store
operations so that a user edit never clobbers the outcome of a run and a run
completion never reverts a user edit.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import RunRecord, RunStatus, Schedule, ensure_utc


logger = logging.getLogger(__name__)


class ScheduleStore(ABC):
    """Abstract base class for schedule state backends."""

    @abstractmethod
    async def insert(self, schedule: Schedule) -> Schedule:
        """Persist a new schedule."""
        pass

    @abstractmethod
    async def get(self, schedule_id: str) -> Optional[Schedule]:
        """Get a schedule by id, None if unknown."""
        pass

    @abstractmethod
    async def list(self, resource_id: Optional[str] = None) -> List[Schedule]:
        """List schedules, optionally restricted to one resource."""
        pass

    @abstractmethod
    async def update_definition(
        self,
        schedule_id: str,
        cron_expression: str,
        enabled: bool,
        next_due_at: Optional[datetime],
        updated_at: datetime
    ) -> Optional[Schedule]:
        """Write the user-editable fields of a schedule.

        Returns:
            Updated schedule, None if unknown
        """
        pass

    @abstractmethod
    async def delete(self, schedule_id: str) -> bool:
        """Delete a schedule and its run history."""
        pass

    @abstractmethod
    async def find_due(self, now: datetime) -> List[Schedule]:
        """Find enabled schedules with next_due_at <= now and no live claim."""
        pass

    @abstractmethod
    async def try_claim(
        self,
        schedule_id: str,
        operation_id: str,
        now: datetime,
        expires_at: datetime
    ) -> bool:
        """Atomically set the in-flight marker if no live claim is held.

        A claim whose expiry is at or before `now` counts as absent.

        Returns:
            True if this caller won the claim
        """
        pass

    @abstractmethod
    async def release_claim(self, schedule_id: str, operation_id: str) -> bool:
        """Clear the in-flight marker if it is still held by operation_id."""
        pass

    @abstractmethod
    async def renew_claim(
        self,
        schedule_id: str,
        operation_id: str,
        expires_at: datetime
    ) -> bool:
        """Move the expiry of a claim still held by operation_id."""
        pass

    @abstractmethod
    async def mark_run_started(
        self,
        schedule_id: str,
        operation_id: str,
        started_at: datetime
    ) -> Optional[Schedule]:
        """Record the start of a run."""
        pass

    @abstractmethod
    async def complete_run(
        self,
        schedule_id: str,
        operation_id: str,
        status: RunStatus,
        message: Optional[str],
        duration_ms: int,
        finished_at: datetime,
        next_due_at: Optional[datetime]
    ) -> Optional[Schedule]:
        """Write last-run fields and next_due_at, releasing a matching claim."""
        pass

    @abstractmethod
    async def append_run(self, record: RunRecord, limit: int) -> None:
        """Append a run to a schedule's history, keeping the newest `limit`."""
        pass

    @abstractmethod
    async def finish_run(
        self,
        operation_id: str,
        status: RunStatus,
        finished_at: datetime,
        duration_ms: int,
        message: Optional[str],
        error_code: Optional[str]
    ) -> bool:
        """Mark a recorded run as terminal."""
        pass

    @abstractmethod
    async def list_runs(self, schedule_id: str, limit: int) -> List[RunRecord]:
        """List the most recent runs of a schedule, newest first."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check backend health."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close backend connections."""
        pass


class InMemoryScheduleStore(ScheduleStore):
    """In-memory store for single-process deployments and tests."""

    def __init__(self):
        self._schedules: Dict[str, Schedule] = {}
        self._runs: Dict[str, List[RunRecord]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, schedule: Schedule) -> Schedule:
        async with self._lock:
            self._schedules[schedule.id] = schedule.model_copy(deep=True)
            self._runs.setdefault(schedule.id, [])
            return schedule.model_copy(deep=True)

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            return schedule.model_copy(deep=True) if schedule else None

    async def list(self, resource_id: Optional[str] = None) -> List[Schedule]:
        async with self._lock:
            schedules = [
                s.model_copy(deep=True) for s in self._schedules.values()
                if resource_id is None or s.resource_id == resource_id
            ]
        return sorted(schedules, key=lambda s: s.created_at)

    async def update_definition(
        self,
        schedule_id: str,
        cron_expression: str,
        enabled: bool,
        next_due_at: Optional[datetime],
        updated_at: datetime
    ) -> Optional[Schedule]:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return None
            schedule.cron_expression = cron_expression
            schedule.enabled = enabled
            schedule.next_due_at = ensure_utc(next_due_at)
            schedule.updated_at = ensure_utc(updated_at)
            return schedule.model_copy(deep=True)

    async def delete(self, schedule_id: str) -> bool:
        async with self._lock:
            self._runs.pop(schedule_id, None)
            return self._schedules.pop(schedule_id, None) is not None

    async def find_due(self, now: datetime) -> List[Schedule]:
        async with self._lock:
            due = [
                s.model_copy(deep=True) for s in self._schedules.values()
                if s.is_due(now)
            ]
        return sorted(due, key=lambda s: s.next_due_at)

    async def try_claim(
        self,
        schedule_id: str,
        operation_id: str,
        now: datetime,
        expires_at: datetime
    ) -> bool:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None or schedule.is_claimed(now):
                return False
            schedule.active_operation_id = operation_id
            schedule.claim_expires_at = ensure_utc(expires_at)
            return True

    async def release_claim(self, schedule_id: str, operation_id: str) -> bool:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None or schedule.active_operation_id != operation_id:
                return False
            schedule.active_operation_id = None
            schedule.claim_expires_at = None
            return True

    async def renew_claim(
        self,
        schedule_id: str,
        operation_id: str,
        expires_at: datetime
    ) -> bool:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None or schedule.active_operation_id != operation_id:
                return False
            schedule.claim_expires_at = ensure_utc(expires_at)
            return True

    async def mark_run_started(
        self,
        schedule_id: str,
        operation_id: str,
        started_at: datetime
    ) -> Optional[Schedule]:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return None
            schedule.last_run_started_at = ensure_utc(started_at)
            return schedule.model_copy(deep=True)

    async def complete_run(
        self,
        schedule_id: str,
        operation_id: str,
        status: RunStatus,
        message: Optional[str],
        duration_ms: int,
        finished_at: datetime,
        next_due_at: Optional[datetime]
    ) -> Optional[Schedule]:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return None
            schedule.last_run_finished_at = ensure_utc(finished_at)
            schedule.last_run_outcome = status
            schedule.last_run_message = message
            schedule.last_run_duration_ms = duration_ms
            schedule.next_due_at = ensure_utc(next_due_at)
            if schedule.active_operation_id == operation_id:
                schedule.active_operation_id = None
                schedule.claim_expires_at = None
            return schedule.model_copy(deep=True)

    async def append_run(self, record: RunRecord, limit: int) -> None:
        if record.schedule_id is None:
            return
        async with self._lock:
            runs = self._runs.setdefault(record.schedule_id, [])
            runs.append(record.model_copy(deep=True))
            if len(runs) > limit:
                del runs[:len(runs) - limit]

    async def finish_run(
        self,
        operation_id: str,
        status: RunStatus,
        finished_at: datetime,
        duration_ms: int,
        message: Optional[str],
        error_code: Optional[str]
    ) -> bool:
        async with self._lock:
            for runs in self._runs.values():
                for record in runs:
                    if record.operation_id == operation_id:
                        record.status = status
                        record.finished_at = ensure_utc(finished_at)
                        record.duration_ms = duration_ms
                        record.message = message
                        record.error_code = error_code
                        return True
            return False

    async def list_runs(self, schedule_id: str, limit: int) -> List[RunRecord]:
        async with self._lock:
            runs = self._runs.get(schedule_id, [])
            return [r.model_copy(deep=True) for r in reversed(runs[-limit:])]

    async def health_check(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                'backend_type': 'InMemoryScheduleStore',
                'backend': 'in_memory',
                'status': 'healthy',
                'schedules': len(self._schedules),
                'active_claims': sum(
                    1 for s in self._schedules.values() if s.active_operation_id
                ),
            }

    async def close(self) -> None:
        """Close in-memory store (no-op)."""
        pass
