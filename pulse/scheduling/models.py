"""Data models for the scheduling system.

This module defines schedules, run records, run outcomes and the descriptors
exchanged with the external resource collaborators.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_operation_id() -> str:
    """Generate an opaque operation id, unique per run."""
    return str(uuid4())


class RunStatus(str, Enum):
    """Status of a run or broadcast operation."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunTrigger(str, Enum):
    """What started a run."""
    SCHEDULE = "schedule"
    MANUAL = "manual"


class Outcome(BaseModel):
    """Classified result of one executor invocation."""

    status: RunStatus = Field(description="Terminal run status")
    success: bool = Field(description="Whether the connection test passed")
    duration_ms: int = Field(default=0, ge=0, description="Wall-clock run duration")
    message: Optional[str] = Field(default=None, description="Summary or error message")
    error_code: Optional[str] = Field(default=None, description="Machine-readable error code")
    error_details: Dict[str, Any] = Field(default_factory=dict)
    server_info: Dict[str, Any] = Field(
        default_factory=dict,
        description="Details reported by the tested server (version, latency, ...)"
    )


class ResourceDescriptor(BaseModel):
    """External resource a connection test is run against."""

    resource_id: str
    name: Optional[str] = None
    kind: str = Field(default="tcp", description="Resource kind, selects the test to run")
    settings: Dict[str, Any] = Field(default_factory=dict)


class ProbeResult(BaseModel):
    """Raw result returned by a resource tester."""

    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    error_details: Dict[str, Any] = Field(default_factory=dict)
    server_info: Dict[str, Any] = Field(default_factory=dict)


class Schedule(BaseModel):
    """Recurring connection test schedule for one resource."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    resource_id: str = Field(min_length=1)
    cron_expression: str = Field(min_length=1, max_length=100)
    enabled: bool = True

    # Derived from cron_expression; None while disabled
    next_due_at: Optional[datetime] = None

    # In-flight marker
    active_operation_id: Optional[str] = None
    claim_expires_at: Optional[datetime] = None

    # Run bookkeeping, written only by the dispatch path
    last_run_started_at: Optional[datetime] = None
    last_run_finished_at: Optional[datetime] = None
    last_run_outcome: Optional[RunStatus] = None
    last_run_message: Optional[str] = None
    last_run_duration_ms: Optional[int] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        'next_due_at', 'claim_expires_at', 'last_run_started_at',
        'last_run_finished_at', 'created_at', 'updated_at'
    )
    @classmethod
    def normalize_timezone(cls, v):
        return ensure_utc(v)

    def is_claimed(self, now: datetime) -> bool:
        """Check if an unexpired claim is held on this schedule."""
        if self.active_operation_id is None:
            return False
        return self.claim_expires_at is None or self.claim_expires_at > ensure_utc(now)

    def is_due(self, now: datetime) -> bool:
        """Check if the schedule should be dispatched at `now`."""
        return (
            self.enabled
            and self.next_due_at is not None
            and self.next_due_at <= ensure_utc(now)
            and not self.is_claimed(now)
        )


class RunRecord(BaseModel):
    """One entry of a schedule's bounded run history."""

    operation_id: str
    schedule_id: Optional[str] = None
    resource_id: str
    trigger: RunTrigger = RunTrigger.SCHEDULE
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    message: Optional[str] = None
    error_code: Optional[str] = None

    @field_validator('started_at', 'finished_at')
    @classmethod
    def normalize_timezone(cls, v):
        return ensure_utc(v)


class CronValidation(BaseModel):
    """Result of validating a cron expression for display."""

    is_valid: bool
    description: Optional[str] = None
    next_run_at: Optional[datetime] = None
    error_message: Optional[str] = None


class CronPreset(BaseModel):
    """Named cron preset."""

    name: str
    label: str
    expression: str
