"""Test doubles shared across the Pulse test suite."""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pulse.broadcast.transport import Transport, TransportError
from pulse.integrations import Authorizer, ResourceTester
from pulse.scheduling.models import ProbeResult, ResourceDescriptor


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingTransport(Transport):
    """Transport keeping every message per observer."""

    def __init__(self, failing: Optional[List[str]] = None):
        self.messages: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.failing = set(failing or [])

    async def send(self, observer_id: str, message: Dict[str, Any]) -> None:
        if observer_id in self.failing:
            raise TransportError(f"Observer {observer_id} unreachable")
        self.messages[observer_id].append(message)

    def sequences(self, observer_id: str) -> List[int]:
        return [m["snapshot"]["sequence"] for m in self.messages[observer_id]]

    def statuses(self, observer_id: str) -> List[str]:
        return [m["snapshot"]["status"] for m in self.messages[observer_id]]


class ScriptedTester(ResourceTester):
    """Connection test with configurable latency and result.

    Latency is applied to the fake clock when one is given, so durations are
    deterministic; `delay` sleeps for real.
    """

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        latency_seconds: float = 0,
        delay: float = 0,
        result: Optional[ProbeResult] = None,
        error: Optional[Exception] = None
    ):
        self.clock = clock
        self.latency_seconds = latency_seconds
        self.delay = delay
        self.result = result or ProbeResult(success=True, message="Connected")
        self.error = error
        self.calls: List[str] = []

    async def test_resource(self, descriptor: ResourceDescriptor) -> ProbeResult:
        self.calls.append(descriptor.resource_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.clock is not None and self.latency_seconds:
            self.clock.advance(seconds=self.latency_seconds)
        if self.error is not None:
            raise self.error
        return self.result


class GatedTester(ResourceTester):
    """Connection test that blocks until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: List[str] = []

    async def test_resource(self, descriptor: ResourceDescriptor) -> ProbeResult:
        self.calls.append(descriptor.resource_id)
        self.started.set()
        await self.release.wait()
        return ProbeResult(success=True, message="Connected")


class DenyAuthorizer(Authorizer):
    """Authorizer rejecting a fixed set of principals."""

    def __init__(self, denied: List[str]):
        self.denied = set(denied)

    async def authorize(self, principal: str, action: str, resource_id: Optional[str]) -> bool:
        return principal not in self.denied
