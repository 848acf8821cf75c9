"""Z-Wave driver interface, lifecycle gate and zwave-js-server binding."""

from provisioner.driver.base import (
    MANUFACTURER_PROPRIETARY_CC,
    CommandClassAPI,
    ControllerDriver,
    Device,
    DeviceConfig,
    DriverFactory,
    DriverState,
    EntryStatus,
    InboundCommand,
    NodeStatus,
    ProvisioningStore,
    ZWaveProtocol,
)

__all__ = [
    "MANUFACTURER_PROPRIETARY_CC",
    "CommandClassAPI",
    "ControllerDriver",
    "Device",
    "DeviceConfig",
    "DriverFactory",
    "DriverState",
    "EntryStatus",
    "InboundCommand",
    "NodeStatus",
    "ProvisioningStore",
    "ZWaveProtocol",
]
