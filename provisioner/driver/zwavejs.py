"""zwave-js-server binding of the controller driver interface.

Speaks the zwave-js-server JSON WebSocket API over :mod:`aiohttp`:

  1. read the ``version`` greeting and negotiate ``set_api_schema``
  2. ``start_listening`` returns the full controller/node state
  3. server events (``{"type": "event", ...}``) become bus events
  4. commands are correlated to ``result`` frames by ``messageId``

Events are queued by the reader and published by a separate dispatcher task,
so bus handlers may issue commands without blocking the socket reader.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

import aiohttp

from provisioner.config import Settings
from provisioner.driver.base import (
    MANUFACTURER_PROPRIETARY_CC,
    DeviceConfig,
    DriverFactory,
    InboundCommand,
    NodeStatus,
)
from provisioner.errors import UpstreamError
from provisioner.events import (
    AllNodesReady,
    CommandClassCommandReceived,
    DriverError,
    DriverReady,
    Event,
    EventBus,
    ExclusionFailed,
    ExclusionStarted,
    ExclusionStopped,
    InclusionFailed,
    InclusionStarted,
    InclusionStopped,
    NodeAdded,
    NodeFound,
    NodeNotification,
    NodeReady,
    NodeRemoved,
    NodeStatusChanged,
    NodeValueUpdated,
)
from provisioner.smartstart.security import grant_security_classes

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 35
_COMMAND_TIMEOUT = 30.0

# Controller events that carry no payload
_CONTROLLER_SIGNALS = {
    "inclusion failed": InclusionFailed,
    "inclusion stopped": InclusionStopped,
    "exclusion started": ExclusionStarted,
    "exclusion failed": ExclusionFailed,
    "exclusion stopped": ExclusionStopped,
}

_STATUS_EVENTS = {
    "alive": NodeStatus.ALIVE,
    "dead": NodeStatus.DEAD,
    "sleep": NodeStatus.ASLEEP,
    "wake up": NodeStatus.AWAKE,
}


def _buffer_to_bytes(value: Any) -> bytes:
    """Decode a serialized Node ``Buffer``, a byte list or a hex string."""
    if value is None:
        return b""
    if isinstance(value, dict) and value.get("type") == "Buffer":
        return bytes(value.get("data") or [])
    if isinstance(value, (list, tuple)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError:
            return value.encode()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return b""


class ZWaveJSCommandClassAPI:
    """``endpoint.invoke_cc_api`` wrapper for one node, endpoint and class."""

    def __init__(self, driver: ZWaveJSDriver, node_id: int, cc_id: int, endpoint: int = 0) -> None:
        self._driver = driver
        self.node_id = node_id
        self.cc_id = cc_id
        self.endpoint = endpoint

    async def send_data(self, vendor_id: int, payload: bytes) -> Any:
        result = await self._driver.command(
            "endpoint.invoke_cc_api",
            nodeId=self.node_id,
            endpoint=self.endpoint,
            commandClass=self.cc_id,
            methodName="sendData",
            args=[vendor_id, {"type": "Buffer", "data": list(payload)}],
        )
        return result.get("response")


class ZWaveJSNode:
    """Device handle backed by the node state reported by the server."""

    def __init__(self, driver: ZWaveJSDriver, state: dict) -> None:
        self._driver = driver
        self.id: int = int(state["nodeId"])
        self._command_classes: set[int] = set()
        self.command_handler = self._unhandled_command
        self.update(state)

    def update(self, state: dict) -> None:
        self.name = state.get("name") or None
        try:
            self.status = NodeStatus(state.get("status", NodeStatus.UNKNOWN))
        except ValueError:
            self.status = NodeStatus.UNKNOWN
        self.ready = bool(state.get("ready", False))
        self.manufacturer_id = state.get("manufacturerId")
        self.product_type = state.get("productType")
        self.product_id = state.get("productId")
        config = state.get("deviceConfig")
        self.device_config = DeviceConfig(
            manufacturer=config.get("manufacturer"),
            label=config.get("label"),
            description=config.get("description"),
        ) if config else None

        ccs = state.get("commandClasses")
        if ccs is None:
            endpoints = state.get("endpoints") or []
            ccs = endpoints[0].get("commandClasses", []) if endpoints else []
        self._command_classes |= {cc["id"] for cc in ccs if isinstance(cc, dict) and "id" in cc}

    def supports_command_class(self, cc_id: int) -> bool:
        return cc_id in self._command_classes

    def add_command_class(self, cc_id: int, *, is_supported: bool, is_controlled: bool) -> None:
        # The server exposes no addCC; support on its side comes from the
        # device config files. Locally the class becomes callable.
        if is_supported or is_controlled:
            self._command_classes.add(cc_id)

    def command_class_api(self, cc_id: int) -> ZWaveJSCommandClassAPI | None:
        if cc_id not in self._command_classes:
            return None
        return ZWaveJSCommandClassAPI(self._driver, self.id, cc_id)

    async def _unhandled_command(self, command: InboundCommand) -> None:
        if command.cc_id == MANUFACTURER_PROPRIETARY_CC:
            logger.debug("No vendor handler on node %s, dropping CC 0x91 frame", self.id)
            return
        await self._driver.bus.publish(CommandClassCommandReceived(
            self.id, command.cc_id, command.payload, command.endpoint_index
        ))


class ZWaveJSProvisioning:
    """SmartStart store commands of the server's controller."""

    def __init__(self, driver: ZWaveJSDriver) -> None:
        self._driver = driver

    async def get_entries(self) -> list[dict]:
        result = await self._driver.command("controller.get_provisioning_entries")
        return list(result.get("entries") or [])

    async def get_entry(self, dsk_or_node_id: str | int) -> dict | None:
        result = await self._driver.command(
            "controller.get_provisioning_entry", dskOrNodeId=dsk_or_node_id
        )
        return result.get("entry") or None

    async def provision(self, entry: dict) -> None:
        await self._driver.command("controller.provision_smart_start_node", entry=entry)

    async def unprovision(self, dsk_or_node_id: str | int) -> None:
        await self._driver.command(
            "controller.unprovision_smart_start_node", dskOrNodeId=dsk_or_node_id
        )


class ZWaveJSDriver:
    """Controller driver talking to a zwave-js-server instance.

    Parameters
    ----------
    url:
        Server URL, e.g. ``ws://localhost:3000``.
    bus:
        Event bus lifecycle and node events are published on.
    """

    def __init__(self, url: str, bus: EventBus, settings: Settings | None = None) -> None:
        self._url = url
        self._bus = bus
        self._settings = settings or Settings()
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._dispatcher: asyncio.Task | None = None
        self._init_task: asyncio.Task | None = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._pending: dict[str, asyncio.Future] = {}
        self._msg_id = 0
        self._running = False
        self._closed = False
        self._nodes: dict[int, ZWaveJSNode] = {}
        self.provisioning = ZWaveJSProvisioning(self)
        self.server_version: dict = {}

    # ------------------------------------------------------------------ #
    # Driver interface
    # ------------------------------------------------------------------ #

    @property
    def bus(self) -> EventBus:
        return self._bus

    async def start(self) -> None:
        """Connect and negotiate the schema. Readiness follows asynchronously."""
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self._url)
            self.server_version = await self._ws.receive_json(timeout=_COMMAND_TIMEOUT)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError, ValueError) as exc:
            await self._close_transport()
            raise UpstreamError(f"Cannot connect to zwave-js-server at {self._url}: {exc}") from exc

        if self.server_version.get("type") != "version":
            await self._close_transport()
            raise UpstreamError(f"Expected version message, got {self.server_version.get('type')}")

        logger.info(
            "Connected to zwave-js-server %s (driver %s, home id %s)",
            self.server_version.get("serverVersion"),
            self.server_version.get("driverVersion"),
            self.server_version.get("homeId"),
        )
        self._running = True
        self._reader = asyncio.create_task(self._read_loop())
        self._dispatcher = asyncio.create_task(self._dispatch_loop())

        schema = min(SCHEMA_VERSION, int(self.server_version.get("maxSchemaVersion", SCHEMA_VERSION)))
        await self.command("set_api_schema", schemaVersion=schema)
        self._init_task = asyncio.create_task(self._initialize())

    async def stop(self) -> None:
        self._running = False
        self._closed = True
        current = asyncio.current_task()
        for task in (self._init_task, self._reader, self._dispatcher):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._init_task = self._reader = self._dispatcher = None
        self._fail_pending(UpstreamError("Driver stopped"))
        await self._close_transport()
        self._nodes.clear()

    def get_device(self, node_id: int) -> ZWaveJSNode | None:
        return self._nodes.get(node_id)

    def devices(self) -> Iterable[ZWaveJSNode]:
        return list(self._nodes.values())

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def _next_id(self) -> str:
        self._msg_id += 1
        return str(self._msg_id)

    async def command(self, command: str, **args: Any) -> dict:
        """Send *command* and wait for its ``result`` frame."""
        if self._ws is None or self._ws.closed:
            raise UpstreamError("Not connected to zwave-js-server")
        message_id = self._next_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._ws.send_json({"messageId": message_id, "command": command, **args})
            message = await asyncio.wait_for(future, timeout=_COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            raise UpstreamError(f"{command} timed out") from None
        finally:
            self._pending.pop(message_id, None)

        if not message.get("success"):
            detail = message.get("message") or message.get("errorCode") or "unknown error"
            raise UpstreamError(f"{command} failed: {detail}")
        return message.get("result") or {}

    # ------------------------------------------------------------------ #
    # Internal loops
    # ------------------------------------------------------------------ #

    async def _initialize(self) -> None:
        try:
            result = await self.command("start_listening")
        except Exception as exc:
            logger.error("start_listening failed: %s", exc)
            await self._bus.publish(DriverError(f"Failed to start listening: {exc}"))
            return
        for state in (result.get("state") or {}).get("nodes") or []:
            node = ZWaveJSNode(self, state)
            self._nodes[node.id] = node
        logger.info("zwave-js-server state received with %d node(s)", len(self._nodes))
        await self._bus.publish(DriverReady())

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._handle_message(msg.json())
                    except ValueError:
                        logger.warning("Ignoring non-JSON frame from zwave-js-server")
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("zwave-js-server reader failed: %s", exc)

        if self._running:
            self._running = False
            self._fail_pending(UpstreamError("Connection to zwave-js-server lost"))
            self._events.put_nowait(DriverError("Connection to zwave-js-server lost"))

    async def _dispatch_loop(self) -> None:
        while not self._closed:
            item = await self._events.get()
            try:
                if isinstance(item, Event):
                    await self._bus.publish(item)
                else:
                    await self._handle_event(item)
            except Exception:
                logger.exception("Error handling zwave-js-server event")

    def _handle_message(self, data: dict) -> None:
        msg_type = data.get("type")
        if msg_type == "result":
            future = self._pending.get(str(data.get("messageId")))
            if future is not None and not future.done():
                future.set_result(data)
        elif msg_type == "event":
            self._events.put_nowait(data.get("event") or {})

    async def _handle_event(self, event: dict) -> None:
        source = event.get("source")
        name = event.get("event")

        if source == "driver":
            if name == "all nodes ready":
                await self._bus.publish(AllNodesReady())
            elif name == "error":
                await self._bus.publish(DriverError(str(event.get("error") or "driver error")))
            return

        if source == "controller":
            await self._handle_controller_event(name, event)
        elif source == "node":
            await self._handle_node_event(name, event)

    async def _handle_controller_event(self, name: str, event: dict) -> None:
        if name == "node added":
            state = event.get("node") or {}
            if "nodeId" not in state:
                return
            node = ZWaveJSNode(self, state)
            self._nodes[node.id] = node
            logger.info("Node %s added", node.id)
            await self._bus.publish(NodeAdded(node.id))
        elif name == "node removed":
            node_id = (event.get("node") or {}).get("nodeId")
            if node_id is None:
                return
            self._nodes.pop(node_id, None)
            logger.info("Node %s removed", node_id)
            await self._bus.publish(NodeRemoved(node_id))
        elif name == "inclusion started":
            strategy = event.get("strategy", event.get("secure"))
            logger.info("Inclusion started (strategy %s)", strategy)
            await self._bus.publish(InclusionStarted(strategy))
        elif name in _CONTROLLER_SIGNALS:
            if name.endswith("failed"):
                logger.error("%s", name.capitalize())
            else:
                logger.info("%s", name.capitalize())
            await self._bus.publish(_CONTROLLER_SIGNALS[name]())
        elif name == "node found":
            found = event.get("node") or {}
            node_id = found.get("id", found.get("nodeId"))
            if node_id is None:
                return
            logger.info("Node %s found", node_id)
            await self._bus.publish(NodeFound(
                int(node_id),
                device_class=found.get("deviceClass"),
                supported_ccs=tuple(found.get("supportedCCs") or ()),
                controlled_ccs=tuple(found.get("controlledCCs") or ()),
            ))
        elif name == "grant security classes":
            await self._grant_security_classes(event.get("requested") or {})

    async def _handle_node_event(self, name: str, event: dict) -> None:
        node = self._nodes.get(event.get("nodeId"))
        if node is None:
            return

        if name == "ready":
            node.update(event.get("nodeState") or {})
            node.ready = True
            await self._bus.publish(NodeReady(node.id))
        elif name in _STATUS_EVENTS:
            node.status = _STATUS_EVENTS[name]
            await self._bus.publish(NodeStatusChanged(node.id, node.status.label))
        elif name == "value updated":
            args = event.get("args") or {}
            await self._bus.publish(NodeValueUpdated(
                node.id, args.get("commandClass"), args.get("property"), args.get("newValue")
            ))
        else:
            await self._handle_node_frame(node, name, event)

    async def _handle_node_frame(self, node: ZWaveJSNode, name: str, event: dict) -> None:
        args = event.get("args") or {}
        cc_id = event.get("ccId")
        if cc_id is not None:
            command = InboundCommand(
                cc_id=int(cc_id),
                payload=_buffer_to_bytes(args.get("payload")),
                vendor_id=args.get("manufacturerId"),
                endpoint_index=int(event.get("endpointIndex") or args.get("endpointIndex") or 0),
            )
            await node.command_handler(command)
            if command.cc_id == MANUFACTURER_PROPRIETARY_CC:
                return

        # Vendor frames arrive as notifications too; only other classes surface here
        if name == "notification":
            await self._bus.publish(NodeNotification(
                node.id,
                int(cc_id) if cc_id is not None else None,
                label=args.get("eventLabel") or args.get("label"),
                parameters=args.get("parameters"),
            ))

    async def _grant_security_classes(self, requested: dict) -> None:
        keys = {**self._settings.security_keys_long_range, **self._settings.security_keys}
        granted = grant_security_classes(requested.get("securityClasses") or [], keys)
        try:
            await self.command(
                "controller.grant_security_classes",
                inclusionGrant={"securityClasses": granted, "clientSideAuth": False},
            )
        except UpstreamError as exc:
            logger.error("Failed to grant security classes: %s", exc)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _close_transport(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def zwavejs_driver_factory(settings: Settings | None = None) -> DriverFactory:
    """Factory for :class:`~provisioner.driver.lifecycle.DriverLifecycle`."""

    def _factory(url: str, bus: EventBus) -> ZWaveJSDriver:
        return ZWaveJSDriver(url, bus, settings)

    return _factory
