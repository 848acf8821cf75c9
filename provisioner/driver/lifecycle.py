"""Driver lifecycle gate.

Owns the single upstream driver connection and its state machine::

    Uninitialized ──start──▶ Starting ──ready──▶ Ready ──stop──▶ Stopped
          ▲                     │                                   │
          └──────── error ──────┘              start ◀──────────────┘

Operations that need a live driver go through :meth:`DriverLifecycle.require_ready`
or :meth:`DriverLifecycle.wait_until_ready`.
"""

from __future__ import annotations

import asyncio
import logging

from provisioner.config import Settings
from provisioner.driver.base import ControllerDriver, DriverFactory, DriverState
from provisioner.errors import (
    AlreadyStartedError,
    NotReadyError,
    ReadyTimeoutError,
    UpstreamError,
)
from provisioner.events import DriverError, DriverReady, DriverStopped, EventBus
from provisioner.vendor.device_config import ensure_custom_device_config

logger = logging.getLogger(__name__)

# Commands that run in every state
UNGATED_COMMANDS = frozenset({"PING", "GET_STATUS", "START"})

# Commands answered with an empty result instead of an error when not ready
EMPTY_WHEN_NOT_READY = {"GET_NODES": "NODES"}


class DriverLifecycle:
    """State machine around one :class:`ControllerDriver`."""

    def __init__(self, driver_factory: DriverFactory, bus: EventBus, settings: Settings | None = None) -> None:
        self._factory = driver_factory
        self._bus = bus
        self._settings = settings or Settings()
        self._state = DriverState.UNINITIALIZED
        self._driver: ControllerDriver | None = None
        self._port: str | None = None
        self._start_error: str | None = None
        self._waiters: list[asyncio.Future] = []

        bus.subscribe(DriverReady, self._on_driver_ready)
        bus.subscribe(DriverError, self._on_driver_error)

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is DriverState.READY

    @property
    def connected(self) -> bool:
        """``True`` while an upstream driver instance exists."""
        return self._driver is not None

    @property
    def port(self) -> str:
        return self._port or self._settings.zwave_port

    @property
    def driver(self) -> ControllerDriver | None:
        return self._driver

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    async def start(self, port: str | None = None) -> str:
        """Create and start the driver; returns the port it was started on.

        Readiness is signalled later through :class:`DriverReady`; use
        :meth:`wait_until_ready` to block on it.
        """
        if self._state in (DriverState.STARTING, DriverState.READY):
            raise AlreadyStartedError("Driver is already started")

        self._port = port or self._settings.zwave_port
        self._state = DriverState.STARTING
        self._start_error = None
        logger.info("Starting Z-Wave driver on %s", self._port)

        try:
            ensure_custom_device_config(self._settings.device_config_dir)
            self._driver = self._factory(self._port, self._bus)
            await self._driver.start()
        except asyncio.CancelledError:
            logger.warning("Driver start on %s cancelled", self._port)
            await self._release()
            self._state = DriverState.UNINITIALIZED
            self._reject_waiters(NotReadyError("Driver start cancelled"))
            raise
        except Exception as exc:
            logger.error("Failed to start driver on %s: %s", self._port, exc)
            await self._release()
            self._state = DriverState.UNINITIALIZED
            self._reject_waiters(UpstreamError(f"Failed to start driver: {exc}"))
            # Published after the reset so _on_driver_error leaves the state alone
            await self._bus.publish(DriverError(f"Failed to start driver: {exc}"))
            raise UpstreamError(f"Failed to start driver: {exc}") from exc

        # An upstream error published while start() was in flight
        if self._state is DriverState.UNINITIALIZED:
            raise UpstreamError(f"Failed to start driver: {self._start_error or 'driver error'}")

        return self._port

    async def stop(self) -> None:
        if self._state is not DriverState.READY:
            raise NotReadyError("Driver not ready")
        logger.info("Stopping Z-Wave driver")
        await self._release()
        self._state = DriverState.STOPPED
        await self._bus.publish(DriverStopped())

    async def shutdown(self) -> None:
        """Release the driver in whatever state it is in. Used on process exit."""
        if self._driver is None:
            return
        await self._release()
        self._reject_waiters(NotReadyError("Driver stopped"))
        self._state = DriverState.STOPPED

    # ------------------------------------------------------------------ #
    # Readiness
    # ------------------------------------------------------------------ #

    def require_ready(self) -> ControllerDriver:
        if self._state is not DriverState.READY or self._driver is None:
            raise NotReadyError("Driver not ready")
        return self._driver

    async def wait_until_ready(self, timeout: float | None = None) -> ControllerDriver:
        """Block until Ready. Returns immediately when already Ready."""
        if self._state is DriverState.READY and self._driver is not None:
            return self._driver
        if self._state is not DriverState.STARTING:
            raise NotReadyError("Driver not started")

        if timeout is None:
            timeout = self._settings.ready_timeout
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            raise ReadyTimeoutError("Timed out waiting for driver ready") from None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    # ------------------------------------------------------------------ #
    # Bus handlers
    # ------------------------------------------------------------------ #

    def _on_driver_ready(self, event: DriverReady) -> None:
        if self._driver is None:
            logger.warning("Ignoring driver ready signal without a driver")
            return
        self._state = DriverState.READY
        logger.info("Z-Wave driver ready on %s", self._port)
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(self._driver)
        self._waiters.clear()

    async def _on_driver_error(self, event: DriverError) -> None:
        logger.error("Z-Wave driver error: %s", event.message)
        if self._state is not DriverState.STARTING:
            return
        self._start_error = event.message
        self._state = DriverState.UNINITIALIZED
        await self._release()
        self._reject_waiters(UpstreamError(event.message))

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _reject_waiters(self, exc: Exception) -> None:
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_exception(exc)
        self._waiters.clear()

    async def _release(self) -> None:
        driver, self._driver = self._driver, None
        if driver is None:
            return
        try:
            await driver.stop()
        except Exception:
            logger.exception("Error while stopping driver")
