"""Interfaces of the external Z-Wave driver collaborator.

The relay never talks to the radio itself. It consumes a driver through the
protocols below; :mod:`provisioner.driver.zwavejs` binds them to a
zwave-js-server instance and the test suite binds them to in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Iterable, Protocol

from provisioner.events import EventBus

# Manufacturer Proprietary command class
MANUFACTURER_PROPRIETARY_CC = 0x91


class NodeStatus(IntEnum):
    UNKNOWN = 0
    ASLEEP = 1
    AWAKE = 2
    DEAD = 3
    ALIVE = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


class ZWaveProtocol(IntEnum):
    """Z-Wave protocol variant, as stored by the driver."""

    ZWAVE = 0
    ZWAVE_LONG_RANGE = 1


class EntryStatus(IntEnum):
    """Provisioning entry status, as stored by the driver."""

    ACTIVE = 0
    INACTIVE = 1


class DriverState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    STARTING = "Starting"
    READY = "Ready"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class DeviceConfig:
    manufacturer: str | None = None
    label: str | None = None
    description: str | None = None

    def to_dict(self) -> dict:
        return {
            "manufacturer": self.manufacturer,
            "label": self.label,
            "description": self.description,
        }


@dataclass(frozen=True)
class InboundCommand:
    """One command frame received from a device."""

    cc_id: int
    payload: bytes = b""
    vendor_id: int | None = None
    endpoint_index: int = 0


CommandHandler = Callable[[InboundCommand], Awaitable[None]]


class CommandClassAPI(Protocol):
    async def send_data(self, vendor_id: int, payload: bytes) -> Any:
        """Send one vendor frame; returns the driver's result (may be None)."""


class Device(Protocol):
    id: int
    name: str | None
    status: NodeStatus
    ready: bool
    device_config: DeviceConfig | None
    manufacturer_id: int | None
    product_type: int | None
    product_id: int | None
    command_handler: CommandHandler

    def supports_command_class(self, cc_id: int) -> bool: ...

    def add_command_class(self, cc_id: int, *, is_supported: bool, is_controlled: bool) -> None: ...

    def command_class_api(self, cc_id: int) -> CommandClassAPI | None: ...


class ProvisioningStore(Protocol):
    """Driver-side SmartStart store. Entries use the driver's dict shape."""

    async def get_entries(self) -> list[dict]: ...

    async def get_entry(self, dsk_or_node_id: str | int) -> dict | None: ...

    async def provision(self, entry: dict) -> None: ...

    async def unprovision(self, dsk_or_node_id: str | int) -> None: ...


class ControllerDriver(Protocol):
    provisioning: ProvisioningStore

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def get_device(self, node_id: int) -> Device | None: ...

    def devices(self) -> Iterable[Device]: ...


DriverFactory = Callable[[str, EventBus], ControllerDriver]


def describe_device(device: Device) -> dict:
    """Client-facing summary of a joined device."""
    try:
        status = NodeStatus(device.status).label
    except ValueError:
        status = "Unknown"
    return {
        "id": device.id,
        "name": device.name or f"Node {device.id}",
        "status": status,
        "ready": bool(device.ready),
        "deviceConfig": device.device_config.to_dict() if device.device_config else None,
    }
