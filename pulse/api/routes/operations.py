"""Operation progress API routes for Pulse.

Observers follow an operation over a WebSocket: the connection joins the
operation, receives the current snapshot first and every later snapshot in
publish order, and leaves when it disconnects.
"""

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ...broadcast.models import ProgressEvent, ProgressSnapshot
from ...broadcast.transport import QueueTransport
from ...exceptions import PulseError
from ...scheduling.service import SchedulingService
from ..dependencies import ANONYMOUS_PRINCIPAL, get_principal, get_service
from ..schemas import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/operations",
    tags=["Operations"],
    responses={
        403: {"model": ErrorResponse, "description": "Access Denied"},
        404: {"model": ErrorResponse, "description": "Operation Not Found"},
        409: {"model": ErrorResponse, "description": "Operation Closed"},
    }
)

# Close codes in the application range
CLOSE_REJECTED = 4403
CLOSE_UNAVAILABLE = 4503


@router.get("/{operation_id}/state", response_model=ProgressSnapshot, summary="Current progress")
async def get_state(
    operation_id: str,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ProgressSnapshot:
    return await service.current_state(principal, operation_id)


@router.post("/{operation_id}/events", response_model=ProgressSnapshot, summary="Publish progress")
async def publish_event(
    operation_id: str,
    event: ProgressEvent,
    principal: str = Depends(get_principal),
    service: SchedulingService = Depends(get_service)
) -> ProgressSnapshot:
    """Publish a progress event for an operation driven by an external producer.

    Rejected with 409 once the operation is terminal or when the percentage
    would go backwards.
    """
    return await service.publish(principal, operation_id, event)


@router.websocket("/{operation_id}/stream")
async def stream_operation(websocket: WebSocket, operation_id: str) -> None:
    """Stream progress snapshots of an operation."""
    service = getattr(websocket.app.state, "service", None)
    transport = service.hub.transport if service else None
    if not isinstance(transport, QueueTransport):
        await websocket.close(code=CLOSE_UNAVAILABLE)
        return

    principal = (
        websocket.headers.get("x-principal")
        or websocket.query_params.get("principal")
        or ANONYMOUS_PRINCIPAL
    )
    observer_id = str(uuid.uuid4())
    queue = transport.register(observer_id)

    try:
        try:
            snapshot = await service.join(principal, operation_id, observer_id)
        except PulseError as e:
            logger.info(f"Rejected stream of {operation_id} for {principal}: {e.message}")
            await websocket.close(code=CLOSE_REJECTED, reason=e.error_code)
            return

        await websocket.accept()
        if snapshot is not None:
            await websocket.send_json(snapshot.to_message())

        sender = asyncio.create_task(_forward(websocket, queue))
        receiver = asyncio.create_task(_drain(websocket))
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.debug(f"Stream of {operation_id} ended: {task.exception()}")
        finally:
            # Also runs when the handler itself is cancelled
            for task in (sender, receiver):
                task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

    finally:
        await service.leave(operation_id, observer_id)
        transport.unregister(observer_id)
        logger.debug(f"Observer {observer_id} left operation {operation_id}")


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _drain(websocket: WebSocket) -> None:
    """Consume client frames until the client disconnects."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
