"""Shared test fixtures and configuration for Pulse tests."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pulse.integrations import StaticResourceProvider
from pulse.scheduling.models import ResourceDescriptor
from tests.helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at 2024-03-04 10:00 UTC."""
    return FakeClock(datetime(2024, 3, 4, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider() -> StaticResourceProvider:
    return StaticResourceProvider([
        ResourceDescriptor(resource_id="db-primary", name="Primary database", settings={"host": "db", "port": 5432}),
        ResourceDescriptor(resource_id="db-replica", name="Replica database", settings={"host": "db2", "port": 5432}),
    ])
