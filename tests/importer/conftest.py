"""Shared fixtures for end device import tests."""

import pytest

from tests.importer.factories import InMemoryRegistry, device, entry, export


@pytest.fixture
def registry():
    return InMemoryRegistry()


@pytest.fixture
def three_devices() -> bytes:
    return export(
        entry(device("sensor-1", "70B3D57ED0000001")),
        entry(device("sensor-2", "70B3D57ED0000002")),
        entry(device("sensor-3", "70B3D57ED0000003")),
    )
