"""Interfaces of the external collaborators Pulse consumes.

Resource lookup, the per-kind connection test and authorization all belong to
the surrounding platform. This module defines their shape plus small default
implementations suitable for single-node deployments and tests.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from .exceptions import NotFound
from .scheduling.models import ProbeResult, ResourceDescriptor


logger = logging.getLogger(__name__)


class ResourceProvider(ABC):
    """Looks up the resources connection tests run against."""

    @abstractmethod
    async def get_resource(self, resource_id: str) -> ResourceDescriptor:
        """Get a resource descriptor.

        Raises:
            NotFound: If the resource does not exist
        """
        pass


class ResourceTester(ABC):
    """Runs the connection test for one resource."""

    @abstractmethod
    async def test_resource(self, descriptor: ResourceDescriptor) -> ProbeResult:
        """Test a resource connection.

        Implementations may ignore cancellation; the executor stops waiting
        on timeout regardless.
        """
        pass


class Authorizer(ABC):
    """Decides whether a principal may act on a resource."""

    @abstractmethod
    async def authorize(self, principal: str, action: str, resource_id: Optional[str]) -> bool:
        pass


class StaticResourceProvider(ResourceProvider):
    """Resource provider backed by an in-memory mapping."""

    def __init__(self, resources: Optional[Iterable[ResourceDescriptor]] = None):
        self._resources: Dict[str, ResourceDescriptor] = {}
        for descriptor in resources or []:
            self.register(descriptor)

    def register(self, descriptor: ResourceDescriptor) -> None:
        self._resources[descriptor.resource_id] = descriptor

    def unregister(self, resource_id: str) -> None:
        self._resources.pop(resource_id, None)

    async def get_resource(self, resource_id: str) -> ResourceDescriptor:
        descriptor = self._resources.get(resource_id)
        if descriptor is None:
            raise NotFound("Resource", resource_id)
        return descriptor


class TcpConnectResourceTester(ResourceTester):
    """Tests reachability by opening a TCP connection to host:port.

    The descriptor's settings must provide `host` and `port`.
    """

    def __init__(self, connect_timeout_seconds: float = 10.0):
        self.connect_timeout_seconds = connect_timeout_seconds

    async def test_resource(self, descriptor: ResourceDescriptor) -> ProbeResult:
        host = descriptor.settings.get("host")
        port = descriptor.settings.get("port")
        if not host or not port:
            return ProbeResult(
                success=False,
                message="Resource settings must include host and port",
                error_code="invalid_settings",
                error_details={"settings": sorted(descriptor.settings.keys())},
            )

        started = time.monotonic()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(port)),
                timeout=self.connect_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ProbeResult(
                success=False,
                message=f"Connection to {host}:{port} timed out",
                error_code="connect_timeout",
                error_details={"host": host, "port": port},
            )
        except OSError as e:
            return ProbeResult(
                success=False,
                message=f"Connection to {host}:{port} failed: {e}",
                error_code="connection_refused",
                error_details={"host": host, "port": port, "errno": e.errno},
            )

        latency_ms = (time.monotonic() - started) * 1000
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing probe connection to {host}:{port}: {e}")

        return ProbeResult(
            success=True,
            message=f"Connected to {host}:{port}",
            server_info={"host": host, "port": int(port), "latency_ms": round(latency_ms, 2)},
        )


class AllowAllAuthorizer(Authorizer):
    """Authorizer that grants every request."""

    async def authorize(self, principal: str, action: str, resource_id: Optional[str]) -> bool:
        return True
