"""SQL-backed schedule store.

The claim is a single conditional UPDATE, so concurrent dispatchers sharing a
database cannot both win it: the row only changes when no unexpired claim is
held, and the affected row count tells the caller whether it won.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_, select, update

from ..scheduling.models import RunRecord, RunStatus, Schedule, ensure_utc
from ..scheduling.store import ScheduleStore
from .database import DatabaseConfig
from .models import ScheduleRecord, ScheduleRunRecord


logger = logging.getLogger(__name__)


def _to_schedule(record: ScheduleRecord) -> Schedule:
    return Schedule.model_validate(record, from_attributes=True)


def _to_run(record: ScheduleRunRecord) -> RunRecord:
    return RunRecord.model_validate(record, from_attributes=True)


def _unclaimed(now: datetime):
    """Condition matching rows without a live claim at `now`."""
    return or_(
        ScheduleRecord.active_operation_id.is_(None),
        ScheduleRecord.claim_expires_at <= now,
    )


class SqlScheduleStore(ScheduleStore):
    """Schedule store on SQLAlchemy's async ORM."""

    def __init__(self, database: DatabaseConfig):
        """Initialize SQL store.

        Args:
            database: Database configuration providing sessions
        """
        self.database = database

    async def initialize(self) -> None:
        """Create tables if they do not exist yet."""
        await self.database.create_tables()

    async def insert(self, schedule: Schedule) -> Schedule:
        record = ScheduleRecord(
            id=schedule.id,
            resource_id=schedule.resource_id,
            cron_expression=schedule.cron_expression,
            enabled=schedule.enabled,
            next_due_at=ensure_utc(schedule.next_due_at),
            active_operation_id=schedule.active_operation_id,
            claim_expires_at=ensure_utc(schedule.claim_expires_at),
            created_at=ensure_utc(schedule.created_at),
            updated_at=ensure_utc(schedule.updated_at),
        )
        async with self.database.session() as session:
            session.add(record)
            await session.flush()
            return _to_schedule(record)

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with self.database.session() as session:
            record = await session.get(ScheduleRecord, schedule_id)
            return _to_schedule(record) if record else None

    async def list(self, resource_id: Optional[str] = None) -> List[Schedule]:
        query = select(ScheduleRecord).order_by(ScheduleRecord.created_at, ScheduleRecord.id)
        if resource_id is not None:
            query = query.where(ScheduleRecord.resource_id == resource_id)

        async with self.database.session() as session:
            result = await session.execute(query)
            return [_to_schedule(r) for r in result.scalars().all()]

    async def update_definition(
        self,
        schedule_id: str,
        cron_expression: str,
        enabled: bool,
        next_due_at: Optional[datetime],
        updated_at: datetime
    ) -> Optional[Schedule]:
        async with self.database.session() as session:
            record = await session.get(ScheduleRecord, schedule_id)
            if record is None:
                return None
            record.cron_expression = cron_expression
            record.enabled = enabled
            record.next_due_at = ensure_utc(next_due_at)
            record.updated_at = ensure_utc(updated_at)
            await session.flush()
            return _to_schedule(record)

    async def delete(self, schedule_id: str) -> bool:
        async with self.database.session() as session:
            await session.execute(
                delete(ScheduleRunRecord).where(ScheduleRunRecord.schedule_id == schedule_id)
            )
            result = await session.execute(
                delete(ScheduleRecord).where(ScheduleRecord.id == schedule_id)
            )
            return result.rowcount == 1

    async def find_due(self, now: datetime) -> List[Schedule]:
        now = ensure_utc(now)
        query = (
            select(ScheduleRecord)
            .where(
                ScheduleRecord.enabled.is_(True),
                ScheduleRecord.next_due_at.is_not(None),
                ScheduleRecord.next_due_at <= now,
                _unclaimed(now),
            )
            .order_by(ScheduleRecord.next_due_at)
        )
        async with self.database.session() as session:
            result = await session.execute(query)
            return [_to_schedule(r) for r in result.scalars().all()]

    async def try_claim(
        self,
        schedule_id: str,
        operation_id: str,
        now: datetime,
        expires_at: datetime
    ) -> bool:
        now = ensure_utc(now)
        statement = (
            update(ScheduleRecord)
            .where(ScheduleRecord.id == schedule_id, _unclaimed(now))
            .values(active_operation_id=operation_id, claim_expires_at=ensure_utc(expires_at))
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(statement)
            return result.rowcount == 1

    async def release_claim(self, schedule_id: str, operation_id: str) -> bool:
        statement = (
            update(ScheduleRecord)
            .where(
                ScheduleRecord.id == schedule_id,
                ScheduleRecord.active_operation_id == operation_id,
            )
            .values(active_operation_id=None, claim_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(statement)
            return result.rowcount == 1

    async def renew_claim(
        self,
        schedule_id: str,
        operation_id: str,
        expires_at: datetime
    ) -> bool:
        statement = (
            update(ScheduleRecord)
            .where(
                ScheduleRecord.id == schedule_id,
                ScheduleRecord.active_operation_id == operation_id,
            )
            .values(claim_expires_at=ensure_utc(expires_at))
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(statement)
            return result.rowcount == 1

    async def mark_run_started(
        self,
        schedule_id: str,
        operation_id: str,
        started_at: datetime
    ) -> Optional[Schedule]:
        async with self.database.session() as session:
            record = await session.get(ScheduleRecord, schedule_id)
            if record is None:
                return None
            record.last_run_started_at = ensure_utc(started_at)
            await session.flush()
            return _to_schedule(record)

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
        async with self.database.session() as session:
            record = await session.get(ScheduleRecord, schedule_id)
            if record is None:
                return None
            record.last_run_finished_at = ensure_utc(finished_at)
            record.last_run_outcome = status.value
            record.last_run_message = message
            record.last_run_duration_ms = duration_ms
            record.next_due_at = ensure_utc(next_due_at)
            if record.active_operation_id == operation_id:
                record.active_operation_id = None
                record.claim_expires_at = None
            await session.flush()
            return _to_schedule(record)

    async def append_run(self, record: RunRecord, limit: int) -> None:
        if record.schedule_id is None:
            return

        async with self.database.session() as session:
            session.add(ScheduleRunRecord(
                operation_id=record.operation_id,
                schedule_id=record.schedule_id,
                resource_id=record.resource_id,
                trigger=record.trigger.value,
                status=record.status.value,
                started_at=ensure_utc(record.started_at),
                finished_at=ensure_utc(record.finished_at),
                duration_ms=record.duration_ms,
                message=record.message,
                error_code=record.error_code,
            ))
            await session.flush()

            # Keep only the newest `limit` runs
            stale = await session.execute(
                select(ScheduleRunRecord.id)
                .where(ScheduleRunRecord.schedule_id == record.schedule_id)
                .order_by(ScheduleRunRecord.started_at.desc(), ScheduleRunRecord.id.desc())
                .offset(limit)
            )
            stale_ids = list(stale.scalars().all())
            if stale_ids:
                await session.execute(
                    delete(ScheduleRunRecord).where(ScheduleRunRecord.id.in_(stale_ids))
                )

    async def finish_run(
        self,
        operation_id: str,
        status: RunStatus,
        finished_at: datetime,
        duration_ms: int,
        message: Optional[str],
        error_code: Optional[str]
    ) -> bool:
        statement = (
            update(ScheduleRunRecord)
            .where(ScheduleRunRecord.operation_id == operation_id)
            .values(
                status=status.value,
                finished_at=ensure_utc(finished_at),
                duration_ms=duration_ms,
                message=message,
                error_code=error_code,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(statement)
            return result.rowcount == 1

    async def list_runs(self, schedule_id: str, limit: int) -> List[RunRecord]:
        query = (
            select(ScheduleRunRecord)
            .where(ScheduleRunRecord.schedule_id == schedule_id)
            .order_by(ScheduleRunRecord.started_at.desc(), ScheduleRunRecord.id.desc())
            .limit(limit)
        )
        async with self.database.session() as session:
            result = await session.execute(query)
            return [_to_run(r) for r in result.scalars().all()]

    async def health_check(self) -> Dict[str, Any]:
        healthy = await self.database.health_check()
        return {
            'backend_type': 'SqlScheduleStore',
            'backend': self.database.url.split(':', 1)[0],
            'status': 'healthy' if healthy else 'unhealthy',
        }

    async def close(self) -> None:
        await self.database.close()
