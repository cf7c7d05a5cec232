"""SQL persistence for schedules and their run history.

Usage:
    from pulse.persistence import DatabaseConfig, SqlScheduleStore

    store = SqlScheduleStore(DatabaseConfig("sqlite+aiosqlite:///./pulse.db"))
    await store.initialize()
"""

from .database import Base, DatabaseConfig
from .models import ScheduleRecord, ScheduleRunRecord
from .store import SqlScheduleStore

__all__ = [
    "Base",
    "DatabaseConfig",
    "ScheduleRecord",
    "ScheduleRunRecord",
    "SqlScheduleStore",
]
