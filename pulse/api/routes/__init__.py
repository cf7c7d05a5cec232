"""API routes for the Pulse REST API."""

from .schedules import router as schedules_router, resources_router
from .operations import router as operations_router

__all__ = [
    "schedules_router",
    "resources_router",
    "operations_router",
]
