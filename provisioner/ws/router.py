"""WebSocket protocol router.

One :class:`ClientConnection` per socket. Requests are decoded once, gated by
driver state, dispatched to a handler and answered on the same socket with
the caller's ``requestId``. Bus events are broadcast to every client.

  Client → Relay:
    GET_PROVISIONING_ENTRIES, GET_PROVISIONING_ENTRY, ADD_PROVISIONING_ENTRY,
    UPDATE_PROVISIONING_ENTRY_STATUS, DELETE_PROVISIONING_ENTRY, GET_NODES,
    GET_NODE, GET_STATUS, START, STOP, SEND_COMMAND, SEND_RANDOM_COMMAND,
    CREATE_DEVICE_CONFIG, PING

  Relay → Client (broadcast):
    CONNECTED, DRIVER_READY, DRIVER_STOPPED, ALL_NODES_READY, NODE_ADDED,
    NODE_REMOVED, NODE_READY, NODE_FOUND, NODE_STATUS_CHANGED,
    NODE_VALUE_UPDATED, NODE_NOTIFICATION, INCLUSION_STARTED, INCLUSION_FAILED,
    INCLUSION_STOPPED, EXCLUSION_STARTED, EXCLUSION_FAILED, EXCLUSION_STOPPED,
    MANUFACTURER_PROPRIETARY_COMMAND, COMMAND_CLASS_COMMAND, ERROR
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from provisioner.config import Settings
from provisioner.driver.base import describe_device
from provisioner.driver.lifecycle import EMPTY_WHEN_NOT_READY, UNGATED_COMMANDS, DriverLifecycle
from provisioner.errors import NotFoundError, NotReadyError, RelayError
from provisioner.events import (
    AllNodesReady,
    CommandClassCommandReceived,
    DriverError,
    DriverReady,
    DriverStopped,
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
    VendorCommandReceived,
)
from provisioner.smartstart.entries import ProvisioningManager
from provisioner.vendor.device_config import create_device_config_for_node
from provisioner.vendor.sender import VendorCommandSender
from provisioner.ws.messages import (
    AddEntryParams,
    DeleteEntryParams,
    DskParams,
    EntryStatusParams,
    MalformedMessage,
    NodeParams,
    RelayRequest,
    SendCommandParams,
    SendRandomParams,
    StartParams,
    decode_request,
    parse_params,
)

logger = logging.getLogger(__name__)

Handler = Callable[[RelayRequest], Awaitable[dict]]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_message(msg_type: str, request_id: Any = None, **fields: Any) -> dict:
    """Outbound frame with ``timestamp`` and, when given, ``requestId``."""
    message: dict[str, Any] = {"type": msg_type}
    message.update({k: v for k, v in fields.items() if v is not None or k == "data"})
    if request_id is not None:
        message["requestId"] = request_id
    message["timestamp"] = _timestamp()
    return message


def error_message(message: str, request_id: Any = None) -> dict:
    return make_message("ERROR", request_id, message=message)


# ── Connection registry ───────────────────────────────────────────


class ClientConnection:
    """One connected client socket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self.closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, message: dict) -> bool:
        """Send a JSON frame. Returns ``False`` when skipped or failed."""
        if not self.is_open:
            return False
        try:
            await self.websocket.send_json(message)
        except Exception as exc:
            logger.warning("Dropping client after failed send: %s", exc)
            self.closed = True
            return False
        return True


# ── Router ────────────────────────────────────────────────────────


class ProtocolRouter:
    """Routes socket requests to relay components and fans out bus events."""

    def __init__(
        self,
        bus: EventBus,
        lifecycle: DriverLifecycle,
        provisioning: ProvisioningManager,
        sender: VendorCommandSender,
        settings: Settings | None = None,
    ) -> None:
        self._bus = bus
        self._lifecycle = lifecycle
        self._provisioning = provisioning
        self._sender = sender
        self._settings = settings or Settings()
        self._clients: set[ClientConnection] = set()
        self._unsubscribers: list = []
        self._handlers: dict[str, Handler] = {
            "GET_PROVISIONING_ENTRIES": self._get_entries,
            "GET_PROVISIONING_ENTRY": self._get_entry,
            "ADD_PROVISIONING_ENTRY": self._add_entry,
            "UPDATE_PROVISIONING_ENTRY_STATUS": self._update_entry_status,
            "DELETE_PROVISIONING_ENTRY": self._delete_entry,
            "GET_NODES": self._get_nodes,
            "GET_NODE": self._get_node,
            "GET_STATUS": self._get_status,
            "START": self._start,
            "STOP": self._stop,
            "SEND_COMMAND": self._send_command,
            "SEND_RANDOM_COMMAND": self._send_random_command,
            "CREATE_DEVICE_CONFIG": self._create_device_config,
            "PING": self._ping,
        }

    @property
    def clients(self) -> set[ClientConnection]:
        return set(self._clients)

    # ------------------------------------------------------------------ #
    # Event broadcast
    # ------------------------------------------------------------------ #

    def bind(self) -> None:
        """Subscribe to bus events that are broadcast to every client."""
        if self._unsubscribers:
            return
        routes: dict[type, Callable[[Any], dict]] = {
            DriverReady: lambda e: make_message("DRIVER_READY"),
            DriverStopped: lambda e: make_message("DRIVER_STOPPED"),
            DriverError: lambda e: error_message(e.message),
            AllNodesReady: lambda e: make_message("ALL_NODES_READY"),
            NodeAdded: lambda e: make_message("NODE_ADDED", nodeId=e.node_id),
            NodeRemoved: lambda e: make_message("NODE_REMOVED", nodeId=e.node_id),
            NodeReady: lambda e: make_message("NODE_READY", nodeId=e.node_id),
            NodeStatusChanged: lambda e: make_message(
                "NODE_STATUS_CHANGED", nodeId=e.node_id, status=e.status
            ),
            InclusionStarted: lambda e: make_message("INCLUSION_STARTED", strategy=e.strategy),
            InclusionFailed: lambda e: make_message("INCLUSION_FAILED"),
            InclusionStopped: lambda e: make_message("INCLUSION_STOPPED"),
            ExclusionStarted: lambda e: make_message("EXCLUSION_STARTED"),
            ExclusionFailed: lambda e: make_message("EXCLUSION_FAILED"),
            ExclusionStopped: lambda e: make_message("EXCLUSION_STOPPED"),
            NodeFound: lambda e: make_message(
                "NODE_FOUND",
                nodeId=e.node_id,
                deviceClass=e.device_class,
                supportedCCs=list(e.supported_ccs),
                controlledCCs=list(e.controlled_ccs),
            ),
            NodeValueUpdated: lambda e: make_message(
                "NODE_VALUE_UPDATED",
                nodeId=e.node_id,
                commandClass=e.command_class,
                property=e.prop,
                newValue=e.new_value,
            ),
            NodeNotification: lambda e: make_message(
                "NODE_NOTIFICATION",
                nodeId=e.node_id,
                commandClassId=e.cc_id,
                notificationLabel=e.label,
                parameters=e.parameters,
            ),
            VendorCommandReceived: lambda e: make_message(
                "MANUFACTURER_PROPRIETARY_COMMAND", data=e.to_dict()
            ),
            CommandClassCommandReceived: lambda e: make_message(
                "COMMAND_CLASS_COMMAND", data=e.to_dict()
            ),
        }
        for event_type, build in routes.items():
            self._unsubscribers.append(
                self._bus.subscribe(event_type, self._broadcaster(build))
            )

    def unbind(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _broadcaster(self, build: Callable[[Any], dict]) -> Callable[[Any], Awaitable[None]]:
        async def _on_event(event: Any) -> None:
            await self.broadcast(build(event))
        return _on_event

    async def broadcast(self, message: dict) -> None:
        """Send *message* to every open client; dead clients are dropped."""
        for client in list(self._clients):
            if client.closed:
                self._clients.discard(client)
                continue
            if not client.is_open:
                continue
            if not await client.send(message):
                self._clients.discard(client)

    # ------------------------------------------------------------------ #
    # Connection handling
    # ------------------------------------------------------------------ #

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client socket.

        Mount via ``app.add_api_websocket_route("/ws", router.handle_connection)``.
        """
        await websocket.accept()
        client = ClientConnection(websocket)
        self._clients.add(client)
        tasks: set[asyncio.Task] = set()
        logger.info("WebSocket client connected (%d total)", len(self._clients))

        try:
            await client.send(make_message("CONNECTED", message="Connected to Z-Wave middleware"))
            if self._lifecycle.is_ready:
                await client.send(make_message("DRIVER_READY"))

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                # Binary frames carry JSON too; decode_request accepts bytes
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                task = asyncio.create_task(self._serve(client, raw))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error in client WebSocket")
        finally:
            self._clients.discard(client)
            client.closed = True
            for task in tasks:
                task.cancel()
            logger.info("WebSocket client disconnected (%d remaining)", len(self._clients))

    async def _serve(self, client: ClientConnection, raw: str | bytes) -> None:
        response = await self.handle_message(raw)
        await client.send(response)

    async def handle_message(self, raw: str | bytes | dict) -> dict:
        """Answer one inbound frame. Never raises."""
        request_id = None
        try:
            request = decode_request(raw)
            request_id = request.request_id
            return await self.dispatch(request)
        except MalformedMessage as exc:
            return error_message(str(exc), exc.request_id)
        except RelayError as exc:
            return error_message(str(exc), request_id)
        except Exception as exc:
            logger.exception("Unexpected error handling message")
            return error_message(str(exc) or type(exc).__name__, request_id)

    async def dispatch(self, request: RelayRequest) -> dict:
        handler = self._handlers.get(request.type)
        if handler is None:
            return error_message(f"Unknown message type: {request.type}", request.request_id)

        if request.type not in UNGATED_COMMANDS and not self._lifecycle.is_ready:
            if request.type in EMPTY_WHEN_NOT_READY:
                return make_message(EMPTY_WHEN_NOT_READY[request.type], request.request_id, data=[])
            raise NotReadyError("Driver not ready")

        return await handler(request)

    # ------------------------------------------------------------------ #
    # Provisioning
    # ------------------------------------------------------------------ #

    async def _get_entries(self, request: RelayRequest) -> dict:
        entries = await self._provisioning.list()
        return make_message(
            "PROVISIONING_ENTRIES", request.request_id, data=[e.to_dict() for e in entries]
        )

    async def _get_entry(self, request: RelayRequest) -> dict:
        dsk = parse_params(DskParams, request).require_dsk()
        entry = await self._provisioning.get(dsk)
        return make_message("PROVISIONING_ENTRY", request.request_id, data=entry.to_dict())

    async def _add_entry(self, request: RelayRequest) -> dict:
        params = parse_params(AddEntryParams, request)
        entry = await self._provisioning.add(params.to_request())
        return make_message("PROVISIONING_ENTRY_ADDED", request.request_id, data=entry.to_dict())

    async def _update_entry_status(self, request: RelayRequest) -> dict:
        params = parse_params(EntryStatusParams, request)
        dsk = params.require_dsk()
        active = params.require_active()
        entry = await self._provisioning.set_active(dsk, active)
        return make_message(
            "PROVISIONING_ENTRY_STATUS_UPDATED",
            request.request_id,
            data={"dsk": entry.dsk, "active": active},
        )

    async def _delete_entry(self, request: RelayRequest) -> dict:
        target = parse_params(DeleteEntryParams, request).target()
        await self._provisioning.remove(target)
        data = {"dsk": target} if isinstance(target, str) else {"nodeId": target}
        return make_message("PROVISIONING_ENTRY_DELETED", request.request_id, data=data)

    # ------------------------------------------------------------------ #
    # Nodes
    # ------------------------------------------------------------------ #

    async def _get_nodes(self, request: RelayRequest) -> dict:
        driver = self._lifecycle.require_ready()
        nodes = [describe_device(device) for device in driver.devices()]
        return make_message("NODES", request.request_id, data=nodes)

    async def _get_node(self, request: RelayRequest) -> dict:
        node_id = parse_params(NodeParams, request).require_node_id()
        device = self._lifecycle.require_ready().get_device(node_id)
        if device is None:
            raise NotFoundError("Node not found")
        return make_message("NODE", request.request_id, data=describe_device(device))

    async def _create_device_config(self, request: RelayRequest) -> dict:
        node_id = parse_params(NodeParams, request).require_node_id()
        device = self._lifecycle.require_ready().get_device(node_id)
        if device is None:
            raise NotFoundError("Node not found")
        manufacturer = device.device_config.manufacturer if device.device_config else None
        path = create_device_config_for_node(
            self._settings.device_config_dir,
            node_id,
            device.manufacturer_id or 0,
            device.product_type or 0,
            device.product_id or 0,
            manufacturer or "Unknown Manufacturer",
        )
        return make_message(
            "DEVICE_CONFIG_CREATED", request.request_id, data={"nodeId": node_id, "path": str(path)}
        )

    # ------------------------------------------------------------------ #
    # Driver lifecycle
    # ------------------------------------------------------------------ #

    async def _get_status(self, request: RelayRequest) -> dict:
        return make_message("STATUS", request.request_id, data={
            "ready": self._lifecycle.is_ready,
            "port": self._lifecycle.port,
            "connected": self._lifecycle.connected,
            "state": self._lifecycle.state.value,
        })

    async def _start(self, request: RelayRequest) -> dict:
        port = parse_params(StartParams, request).port
        started_on = await self._lifecycle.start(port)
        return make_message("START_SUCCESS", request.request_id, data={
            "port": started_on,
            "message": "Driver started successfully",
        })

    async def _stop(self, request: RelayRequest) -> dict:
        await self._lifecycle.stop()
        return make_message("STOP_SUCCESS", request.request_id, data={"message": "Driver stopped"})

    async def _ping(self, request: RelayRequest) -> dict:
        return make_message("PONG", request.request_id)

    # ------------------------------------------------------------------ #
    # Vendor commands
    # ------------------------------------------------------------------ #

    async def _send_command(self, request: RelayRequest) -> dict:
        params = parse_params(SendCommandParams, request)
        result = await self._sender.send(
            node_id=params.node_id,
            payload=params.require_payload(),
            vendor_id=params.manufacturer_id,
            count=params.count,
        )
        return make_message("COMMAND_RESULT", request.request_id, data=result.to_dict())

    async def _send_random_command(self, request: RelayRequest) -> dict:
        params = parse_params(SendRandomParams, request)
        result = await self._sender.send_random(
            node_id=params.node_id,
            vendor_id=params.manufacturer_id,
            count=params.count,
        )
        return make_message("COMMAND_RESULT", request.request_id, data=result.to_dict())
