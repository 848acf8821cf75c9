"""Relay context: one explicitly wired instance of every component."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from provisioner.config import Settings
from provisioner.driver.base import DriverFactory
from provisioner.driver.lifecycle import DriverLifecycle
from provisioner.events import EventBus
from provisioner.smartstart.entries import ProvisioningManager
from provisioner.vendor.interceptor import CommandInterceptor
from provisioner.vendor.sender import VendorCommandSender
from provisioner.ws.router import ProtocolRouter

logger = logging.getLogger(__name__)


@dataclass
class RelayContext:
    settings: Settings
    bus: EventBus
    lifecycle: DriverLifecycle
    provisioning: ProvisioningManager
    interceptor: CommandInterceptor
    sender: VendorCommandSender
    router: ProtocolRouter

    async def close(self) -> None:
        """Release the upstream driver, if any."""
        await self.lifecycle.shutdown()


def build_context(settings: Settings | None = None, driver_factory: DriverFactory | None = None) -> RelayContext:
    """Wire the relay components around one event bus.

    Subscription order matters: the lifecycle gate sees every event first,
    then the interceptor, then the router, so clients are only told about a
    state the relay has already applied. Without *driver_factory* the
    zwave-js-server adapter is used.
    """
    settings = settings or Settings()
    if driver_factory is None:
        from provisioner.driver.zwavejs import zwavejs_driver_factory
        driver_factory = zwavejs_driver_factory(settings)

    bus = EventBus()
    lifecycle = DriverLifecycle(driver_factory, bus, settings)
    interceptor = CommandInterceptor(bus, lifecycle)
    interceptor.bind()
    provisioning = ProvisioningManager(lifecycle)
    sender = VendorCommandSender(lifecycle)
    router = ProtocolRouter(bus, lifecycle, provisioning, sender, settings)
    router.bind()

    logger.debug("Relay context built (upstream %s)", settings.zwave_port)
    return RelayContext(
        settings=settings,
        bus=bus,
        lifecycle=lifecycle,
        provisioning=provisioning,
        interceptor=interceptor,
        sender=sender,
        router=router,
    )
