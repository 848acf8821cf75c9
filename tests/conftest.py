"""pytest configuration and shared fixtures for provisioner tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from provisioner.config import Settings
from provisioner.context import build_context
from provisioner.driver.base import DeviceConfig

from fakes import FakeDevice, FakeDriverFactory


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        zwave_port="ws://zwave.test:3000",
        device_config_dir=str(tmp_path / "device-configs"),
        ready_timeout=0.5,
        security_keys={"S2_AccessControl": "0" * 32, "S2_Authenticated": "1" * 32},
    )


@pytest.fixture
def device():
    return FakeDevice(
        2,
        name="Front door",
        device_config=DeviceConfig("Silicon Labs (dev board)", "Silabs LR Dev (hack)", "Dev board"),
    )


@pytest.fixture
def factory(device):
    return FakeDriverFactory([device])


@pytest.fixture
def context(settings, factory):
    return build_context(settings, factory)


@pytest_asyncio.fixture
async def ready_context(context):
    await context.lifecycle.start()
    assert context.lifecycle.is_ready
    return context
