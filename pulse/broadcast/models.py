"""Progress events and snapshots exchanged through the broadcast hub."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..scheduling.models import Outcome, RunStatus, utc_now


class ProgressEvent(BaseModel):
    """One progress report published for an operation."""

    status: RunStatus = Field(
        default=RunStatus.RUNNING,
        description="Operation status after this event"
    )
    percentage: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=100.0,
        description="Completion percentage; derived from processed/total when omitted"
    )
    processed: Optional[int] = Field(default=None, ge=0)
    total: Optional[int] = Field(default=None, ge=0)
    current_step: Optional[str] = Field(default=None, description="Label of the step in progress")
    errors: List[str] = Field(default_factory=list, description="Errors raised since the last event")
    warnings: List[str] = Field(default_factory=list, description="Warnings raised since the last event")
    estimated_remaining_seconds: Optional[float] = Field(default=None, ge=0.0)
    message: Optional[str] = None
    outcome: Optional[Outcome] = Field(
        default=None,
        description="Run outcome, carried by terminal events of connection tests"
    )

    @model_validator(mode='after')
    def validate_counts(self):
        """Processed count cannot exceed the total."""
        if self.processed is not None and self.total is not None and self.processed > self.total:
            raise ValueError(f"processed ({self.processed}) exceeds total ({self.total})")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def resolved_percentage(self) -> Optional[float]:
        """Percentage given explicitly or derived from the counts."""
        if self.percentage is not None:
            return self.percentage
        if self.processed is not None and self.total:
            return min(100.0, self.processed * 100.0 / self.total)
        return None


class ProgressSnapshot(BaseModel):
    """Latest known state of an operation."""

    operation_id: str
    status: RunStatus = RunStatus.RUNNING
    sequence: int = Field(default=0, description="Number of events applied so far")
    percentage: float = 0.0
    processed: Optional[int] = None
    total: Optional[int] = None
    current_step: Optional[str] = None
    recent_errors: List[str] = Field(default_factory=list)
    recent_warnings: List[str] = Field(default_factory=list)
    estimated_remaining_seconds: Optional[float] = None
    message: Optional[str] = None
    outcome: Optional[Outcome] = None
    started_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_successful(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def to_message(self) -> Dict[str, Any]:
        """Wire message pushed to observers."""
        return {
            "type": "progress",
            "operation_id": self.operation_id,
            "snapshot": self.model_dump(mode='json'),
        }
