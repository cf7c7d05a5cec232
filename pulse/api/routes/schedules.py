"""Schedule management API routes for Pulse.

Errors raised by the service (invalid expression, unknown schedule, run
already active, access denied) propagate to the application's PulseError
handler, which maps them to status codes with an ErrorResponse body.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from ...scheduling.models import CronValidation, Schedule
from ...scheduling.service import SchedulingService
from ..dependencies import get_principal, get_service
from ..schemas import (
    CreateScheduleRequest,
    ErrorResponse,
    PresetList,
    ResourceScheduleRequest,
    RunList,
    RunNowResponse,
    ScheduleDetail,
    ScheduleList,
    UpdateScheduleRequest,
    ValidateCronRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/schedules",
    tags=["Schedules"],
    responses={
        400: {"model": ErrorResponse, "description": "Invalid Cron Expression"},
        403: {"model": ErrorResponse, "description": "Access Denied"},
        404: {"model": ErrorResponse, "description": "Schedule Not Found"},
        422: {"model": ErrorResponse, "description": "Validation Error"},
    }
)

resources_router = APIRouter(
    prefix="/resources",
    tags=["Schedules"],
    responses={
        403: {"model": ErrorResponse, "description": "Access Denied"},
        404: {"model": ErrorResponse, "description": "Resource Not Found"},
        409: {"model": ErrorResponse, "description": "Run Already Active"},
    }
)


def _detail(service: SchedulingService, schedule: Schedule) -> ScheduleDetail:
    return ScheduleDetail(
        **schedule.model_dump(),
        description=service.cron.describe(schedule.cron_expression),
    )


def _run_ref(operation_id: str, resource_id: str, schedule_id: Optional[str]) -> RunNowResponse:
    return RunNowResponse(
        operation_id=operation_id,
        resource_id=resource_id,
        schedule_id=schedule_id,
        stream_url=f"/api/operations/{operation_id}/stream",
    )


@router.get("", response_model=ScheduleList, summary="List schedules")
async def list_schedules(
    resource_id: Optional[str] = Query(default=None, description="Only schedules of this resource"),
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleList:
    schedules = await service.list_schedules(principal, resource_id)
    return ScheduleList(
        schedules=[_detail(service, s) for s in schedules],
        total=len(schedules),
    )


@router.post("", response_model=ScheduleDetail, status_code=201, summary="Create schedule")
async def create_schedule(
    body: CreateScheduleRequest,
    http_request: Request,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleDetail:
    """Create a schedule; its first due time is computed from now."""
    request_id = getattr(http_request.state, "request_id", None)
    schedule = await service.create_schedule(
        principal, body.resource_id, body.cron_expression, body.enabled
    )
    logger.info(
        f"Created schedule {schedule.id} for resource {schedule.resource_id}",
        extra={"request_id": request_id, "schedule_id": schedule.id}
    )
    return _detail(service, schedule)


@router.get("/presets", response_model=PresetList, summary="List cron presets")
async def list_presets(service: SchedulingService = Depends(get_service)) -> PresetList:
    return PresetList(presets=service.cron_presets())


@router.post("/validate-cron", response_model=CronValidation, summary="Validate cron expression")
async def validate_cron(
    body: ValidateCronRequest,
    service: SchedulingService = Depends(get_service)
) -> CronValidation:
    """Validate an expression; invalid input is reported in the body, not as an error."""
    return service.validate_cron(body.cron_expression)


@router.get("/resource/{resource_id}", response_model=ScheduleList, summary="Schedules of a resource")
async def get_resource_schedules(
    resource_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleList:
    schedules = await service.list_schedules(principal, resource_id)
    return ScheduleList(
        schedules=[_detail(service, s) for s in schedules],
        total=len(schedules),
    )


@router.put("/resource/{resource_id}", response_model=ScheduleDetail, summary="Save resource schedule")
async def save_resource_schedule(
    resource_id: str,
    body: ResourceScheduleRequest,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleDetail:
    """Create the resource's schedule, or update the existing one."""
    schedule = await service.save_resource_schedule(
        principal, resource_id, body.cron_expression, body.enabled
    )
    return _detail(service, schedule)


@router.delete("/resource/{resource_id}", status_code=204, summary="Delete resource schedules")
async def delete_resource_schedules(
    resource_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> Response:
    deleted = await service.delete_resource_schedules(principal, resource_id)
    logger.info(f"Deleted {deleted} schedule(s) of resource {resource_id}")
    return Response(status_code=204)


@router.get("/{schedule_id}", response_model=ScheduleDetail, summary="Get schedule")
async def get_schedule(
    schedule_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleDetail:
    schedule = await service.get_schedule(principal, schedule_id)
    return _detail(service, schedule)


@router.put("/{schedule_id}", response_model=ScheduleDetail, summary="Update schedule")
async def update_schedule(
    schedule_id: str,
    body: UpdateScheduleRequest,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleDetail:
    """Update the expression and/or enabled flag.

    The next due time is recomputed only when the expression changes or the
    schedule is re-enabled without one.
    """
    schedule = await service.update_schedule(
        principal, schedule_id, body.cron_expression, body.enabled
    )
    return _detail(service, schedule)


@router.delete("/{schedule_id}", status_code=204, summary="Delete schedule")
async def delete_schedule(
    schedule_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> Response:
    await service.delete_schedule(principal, schedule_id)
    return Response(status_code=204)


@router.patch("/{schedule_id}/toggle", response_model=ScheduleDetail, summary="Toggle schedule")
async def toggle_schedule(
    schedule_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ScheduleDetail:
    schedule = await service.toggle_schedule(principal, schedule_id)
    return _detail(service, schedule)


@router.post(
    "/{schedule_id}/run-now",
    response_model=RunNowResponse,
    status_code=202,
    summary="Run schedule now",
    responses={409: {"model": ErrorResponse, "description": "Run Already Active"}}
)
async def run_schedule_now(
    schedule_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> RunNowResponse:
    """Start a run immediately and return its operation id without waiting for it."""
    schedule = await service.get_schedule(principal, schedule_id)
    operation_id = await service.run_now(principal, schedule_id)
    return _run_ref(operation_id, schedule.resource_id, schedule_id)


@router.get("/{schedule_id}/runs", response_model=RunList, summary="Recent runs")
async def list_runs(
    schedule_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> RunList:
    runs = await service.recent_runs(principal, schedule_id)
    return RunList(schedule_id=schedule_id, runs=runs)


@resources_router.post(
    "/{resource_id}/run-now",
    response_model=RunNowResponse,
    status_code=202,
    summary="Test resource now"
)
async def run_resource_now(
    resource_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> RunNowResponse:
    """Test a resource immediately, through its schedule when it has one."""
    schedules = await service.list_schedules(principal, resource_id)
    operation_id = await service.run_now_for_resource(principal, resource_id)
    schedule_id = schedules[0].id if schedules else None
    return _run_ref(operation_id, resource_id, schedule_id)
