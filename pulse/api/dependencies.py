"""FastAPI dependencies shared by the Pulse routes."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from ..scheduling.service import SchedulingService

ANONYMOUS_PRINCIPAL = "anonymous"


def get_service(request: Request) -> SchedulingService:
    """Get the scheduling service attached to the application.

    Raises:
        HTTPException: If the application was created without a service
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Scheduling service not available")
    return service


async def get_principal(x_principal: Optional[str] = Header(default=None)) -> str:
    """Principal on whose behalf the request runs.

    Authentication happens upstream; the authenticated identity is passed in
    the X-Principal header.
    """
    return x_principal or ANONYMOUS_PRINCIPAL
