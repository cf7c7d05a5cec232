"""Scheduling of recurring connection tests.

This package provides:
- Cron expression evaluation, presets and human-readable descriptions
- Schedule definitions with atomic run claims
- Durable schedule store interface and an in-memory implementation
- Registry owning schedule lifecycle and run bookkeeping
- Scheduling metrics

The dispatcher, executor and service modules are imported directly, e.g.
``from pulse.scheduling.service import create_service``.
"""

from .models import (
    Schedule,
    RunRecord,
    RunStatus,
    RunTrigger,
    Outcome,
    ProbeResult,
    ResourceDescriptor,
    CronValidation,
    CronPreset,
)

from .cron import (
    CronEvaluator,
    validate_cron_expression,
    get_next_run_time,
)

from .store import ScheduleStore, InMemoryScheduleStore
from .registry import ScheduleRegistry
from .metrics import MetricsCollector, SchedulingMetrics

__all__ = [
    # Models
    "Schedule",
    "RunRecord",
    "RunStatus",
    "RunTrigger",
    "Outcome",
    "ProbeResult",
    "ResourceDescriptor",
    "CronValidation",
    "CronPreset",

    # Cron evaluation
    "CronEvaluator",
    "validate_cron_expression",
    "get_next_run_time",

    # Storage
    "ScheduleStore",
    "InMemoryScheduleStore",
    "ScheduleRegistry",

    # Metrics
    "MetricsCollector",
    "SchedulingMetrics",
]
