"""Request and response schemas for the Pulse REST API."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..scheduling.models import CronPreset, RunRecord, RunStatus, Schedule, utc_now


class CreateScheduleRequest(BaseModel):
    """Create a schedule for a resource."""

    resource_id: str = Field(..., min_length=1, description="Resource the schedule tests")
    cron_expression: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Five-field cron expression or macro such as @hourly"
    )
    enabled: bool = Field(default=True)


class UpdateScheduleRequest(BaseModel):
    """Partial update of a schedule definition."""

    cron_expression: Optional[str] = Field(default=None, min_length=1, max_length=100)
    enabled: Optional[bool] = None


class ResourceScheduleRequest(BaseModel):
    """Create or update the schedule of a resource."""

    cron_expression: str = Field(..., min_length=1, max_length=100)
    enabled: bool = Field(default=True)


class ValidateCronRequest(BaseModel):
    cron_expression: str = Field(..., description="Expression to validate")


class ScheduleDetail(Schedule):
    """Schedule with a human-readable description of its expression."""

    description: Optional[str] = Field(default=None, description="Readable form of the cron expression")


class ScheduleList(BaseModel):
    schedules: List[ScheduleDetail]
    total: int = Field(..., ge=0)


class RunList(BaseModel):
    schedule_id: str
    runs: List[RunRecord]


class PresetList(BaseModel):
    presets: List[CronPreset]


class RunNowResponse(BaseModel):
    """Reference to a started run; progress is streamed under the operation id."""

    operation_id: str
    resource_id: str
    schedule_id: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    stream_url: str = Field(..., description="WebSocket path streaming the run's progress")


class ErrorResponse(BaseModel):
    """Standard error response schema."""

    error: str = Field(..., description="Error code or type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error details")
    request_id: Optional[str] = Field(default=None, description="Unique request identifier for tracking")
    timestamp: datetime = Field(default_factory=utc_now, description="When the error occurred")


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: Literal['healthy', 'degraded', 'unhealthy']
    version: str
    timestamp: datetime = Field(default_factory=utc_now)
    services: Dict[str, Literal['healthy', 'degraded', 'unhealthy']]
    uptime_seconds: float = Field(..., ge=0)
