"""Test fixtures for the Connector hub client and discovery."""
from __future__ import annotations

import pytest
import pytest_asyncio

from connector_hub import (
    ConnectorHubClient,
    ConnectorHubSimulator,
    DeviceRecord,
    InMemoryAccessoryRegistry,
)

from .mocks.fake_hub_client import CONNECTOR_KEY, HUB_TOKEN, FakeHubClient, RecordingRetryPolicy

SIMULATED_DEVICES = [
    DeviceRecord("aabbccddeeff0001", "10000000"),
    DeviceRecord("aabbccddeeff0002", "22000002"),
]

@pytest.fixture
def fake_client() -> FakeHubClient:
    """A client answered from a script."""
    return FakeHubClient()

@pytest.fixture
def registry() -> InMemoryAccessoryRegistry:
    """An empty in-memory accessory registry."""
    return InMemoryAccessoryRegistry()

@pytest.fixture
def retry_policy() -> RecordingRetryPolicy:
    """A fast retry policy that records its calls."""
    return RecordingRetryPolicy(0.01)

@pytest_asyncio.fixture
async def hub_simulator():
    """A simulated hub listening on an ephemeral loopback port."""
    async with ConnectorHubSimulator(CONNECTOR_KEY, devices=SIMULATED_DEVICES, token=HUB_TOKEN) as simulator:
        yield simulator

@pytest_asyncio.fixture
async def loopback_client(hub_simulator: ConnectorHubSimulator):
    """A real client bound to the loopback interface, talking to hub_simulator."""
    client = ConnectorHubClient(
        CONNECTOR_KEY,
        response_wait_time=0.5,
        request_timeout=1.0,
        hub_port=hub_simulator.port,
        bind_address="127.0.0.1",
        listen_port=0,
        join_multicast=False,
    )
    async with client:
        yield client
