"""Tests for the relay socket protocol router."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import pytest
from fastapi.websockets import WebSocketState

from provisioner.driver.base import InboundCommand
from provisioner.events import (
    CommandClassCommandReceived,
    DriverError,
    ExclusionStarted,
    NodeAdded,
    NodeFound,
    NodeNotification,
    NodeStatusChanged,
    NodeValueUpdated,
)
from provisioner.ws.router import make_message

from fakes import DSK_40, DSK_40_GROUPED, PAYLOAD_HEX


class FakeWebSocket:
    """Minimal stand-in for a Starlette WebSocket."""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.accepted = False
        self.fail_sends = False
        self.sent: list[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def receive(self):
        raw = await self._incoming.get()
        if raw is None:
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(raw, bytes):
            return {"type": "websocket.receive", "bytes": raw}
        return {"type": "websocket.receive", "text": raw}

    def feed(self, message: dict):
        self._incoming.put_nowait(json.dumps(message))

    def feed_bytes(self, raw: bytes):
        self._incoming.put_nowait(raw)

    def disconnect(self):
        self._incoming.put_nowait(None)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


async def _wait_for(predicate, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def _ask(context, **frame) -> dict:
    return await context.router.handle_message(json.dumps(frame))


class TestMakeMessage:
    def test_envelope(self):
        message = make_message("PONG", "r1")
        assert message["type"] == "PONG"
        assert message["requestId"] == "r1"
        assert datetime.fromisoformat(message["timestamp"]).tzinfo is not None

    def test_none_fields_dropped_except_data(self):
        message = make_message("NODES", data=None, message=None)
        assert "data" in message
        assert "message" not in message
        assert "requestId" not in message


class TestEnvelopeErrors:
    @pytest.mark.asyncio
    async def test_invalid_json(self, context):
        response = await context.router.handle_message("{not json")
        assert response["type"] == "ERROR"
        assert response["message"] == "Invalid message format"

    @pytest.mark.asyncio
    async def test_missing_type_echoes_request_id(self, context):
        response = await _ask(context, requestId="abc")
        assert response["type"] == "ERROR"
        assert response["message"] == "Message must have a 'type' field"
        assert response["requestId"] == "abc"

    @pytest.mark.asyncio
    async def test_unknown_type(self, context):
        response = await _ask(context, type="REBOOT", requestId=1)
        assert response["message"] == "Unknown message type: REBOOT"
        assert response["requestId"] == 1


class TestGating:
    @pytest.mark.asyncio
    async def test_ping_always_allowed(self, context):
        response = await _ask(context, type="PING", requestId="p")
        assert response["type"] == "PONG"
        assert response["requestId"] == "p"

    @pytest.mark.asyncio
    async def test_status_before_start(self, context):
        response = await _ask(context, type="GET_STATUS")
        assert response["type"] == "STATUS"
        assert response["data"] == {
            "ready": False,
            "port": "ws://zwave.test:3000",
            "connected": False,
            "state": "Uninitialized",
        }

    @pytest.mark.asyncio
    async def test_get_nodes_empty_when_uninitialized(self, context):
        response = await _ask(context, type="GET_NODES", requestId=3)
        assert response["type"] == "NODES"
        assert response["data"] == []
        assert response["requestId"] == 3

    @pytest.mark.parametrize("msg_type", [
        "GET_PROVISIONING_ENTRIES", "ADD_PROVISIONING_ENTRY", "GET_NODE", "STOP", "SEND_COMMAND",
    ])
    @pytest.mark.asyncio
    async def test_gated_commands(self, context, msg_type):
        response = await _ask(context, type=msg_type, requestId="g")
        assert response["type"] == "ERROR"
        assert response["message"] == "Driver not ready"
        assert response["requestId"] == "g"


class TestLifecycleCommands:
    @pytest.mark.asyncio
    async def test_start_twice(self, context):
        first = await _ask(context, type="START", requestId=1)
        assert first["type"] == "START_SUCCESS"
        assert first["data"] == {"port": "ws://zwave.test:3000", "message": "Driver started successfully"}

        second = await _ask(context, type="START", requestId=2)
        assert second["type"] == "ERROR"
        assert "already started" in second["message"]

    @pytest.mark.asyncio
    async def test_start_with_port(self, context, factory):
        response = await _ask(context, type="START", port="ws://elsewhere:3000")
        assert response["data"]["port"] == "ws://elsewhere:3000"
        assert factory.driver.port == "ws://elsewhere:3000"

    @pytest.mark.asyncio
    async def test_start_failure_reported(self, context, factory):
        factory.fail_build = OSError("port busy")
        response = await _ask(context, type="START")
        assert response["type"] == "ERROR"
        assert "port busy" in response["message"]

    @pytest.mark.asyncio
    async def test_stop(self, ready_context):
        response = await _ask(ready_context, type="STOP", requestId="s")
        assert response["type"] == "STOP_SUCCESS"
        status = await _ask(ready_context, type="GET_STATUS")
        assert status["data"]["state"] == "Stopped"


class TestProvisioningCommands:
    @pytest.mark.asyncio
    async def test_add_normalizes_dsk(self, ready_context):
        response = await _ask(ready_context, type="ADD_PROVISIONING_ENTRY", requestId=1, entry={
            "dsk": DSK_40,
            "name": "Sensor",
            "securityClasses": {"s2AccessControl": True},
            "active": True,
        })
        assert response["type"] == "PROVISIONING_ENTRY_ADDED"
        assert response["data"]["dsk"] == DSK_40_GROUPED
        assert response["data"]["active"] is True
        assert response["data"]["securityClasses"]["s2AccessControl"] is True

    @pytest.mark.asyncio
    async def test_add_via_data_envelope(self, ready_context):
        response = await _ask(ready_context, type="ADD_PROVISIONING_ENTRY", data={"dsk": DSK_40})
        assert response["data"]["dsk"] == DSK_40_GROUPED

    @pytest.mark.asyncio
    async def test_add_requires_dsk(self, ready_context):
        response = await _ask(ready_context, type="ADD_PROVISIONING_ENTRY", entry={"name": "x"})
        assert response["message"] == "DSK is required"

    @pytest.mark.asyncio
    async def test_list_and_get(self, ready_context):
        await _ask(ready_context, type="ADD_PROVISIONING_ENTRY", dsk=DSK_40)
        entries = await _ask(ready_context, type="GET_PROVISIONING_ENTRIES")
        assert entries["type"] == "PROVISIONING_ENTRIES"
        assert [e["dsk"] for e in entries["data"]] == [DSK_40_GROUPED]

        entry = await _ask(ready_context, type="GET_PROVISIONING_ENTRY", dsk=DSK_40)
        assert entry["type"] == "PROVISIONING_ENTRY"
        assert entry["data"]["dsk"] == DSK_40_GROUPED

    @pytest.mark.asyncio
    async def test_get_unknown_entry(self, ready_context):
        response = await _ask(ready_context, type="GET_PROVISIONING_ENTRY", dsk=DSK_40)
        assert response["message"] == "Entry not found"

    @pytest.mark.asyncio
    async def test_update_status_unknown_dsk(self, ready_context):
        response = await _ask(
            ready_context, type="UPDATE_PROVISIONING_ENTRY_STATUS", dsk=DSK_40, active=True, requestId="u",
        )
        assert response["type"] == "ERROR"
        assert "not found" in response["message"]
        assert response["requestId"] == "u"

    @pytest.mark.asyncio
    async def test_update_status(self, ready_context):
        await _ask(ready_context, type="ADD_PROVISIONING_ENTRY", dsk=DSK_40)
        response = await _ask(ready_context, type="UPDATE_PROVISIONING_ENTRY_STATUS", dsk=DSK_40, active=True)
        assert response["type"] == "PROVISIONING_ENTRY_STATUS_UPDATED"
        assert response["data"] == {"dsk": DSK_40_GROUPED, "active": True}

    @pytest.mark.asyncio
    async def test_update_status_requires_boolean(self, ready_context):
        response = await _ask(ready_context, type="UPDATE_PROVISIONING_ENTRY_STATUS", dsk=DSK_40, active="yes")
        assert response["message"] == "active must be a boolean"

    @pytest.mark.asyncio
    async def test_delete(self, ready_context, factory):
        await _ask(ready_context, type="ADD_PROVISIONING_ENTRY", dsk=DSK_40)
        response = await _ask(ready_context, type="DELETE_PROVISIONING_ENTRY", dsk=DSK_40)
        assert response["type"] == "PROVISIONING_ENTRY_DELETED"
        assert response["data"] == {"dsk": DSK_40}
        assert factory.store.entries == {}

    @pytest.mark.asyncio
    async def test_delete_by_node_id(self, ready_context, factory):
        factory.store.entries["A"] = {"dsk": "A", "status": 0, "nodeId": 4}
        response = await _ask(ready_context, type="DELETE_PROVISIONING_ENTRY", nodeId=4)
        assert response["data"] == {"nodeId": 4}


class TestNodeCommands:
    @pytest.mark.asyncio
    async def test_get_nodes(self, ready_context):
        response = await _ask(ready_context, type="GET_NODES")
        assert response["data"] == [{
            "id": 2,
            "name": "Front door",
            "status": "Alive",
            "ready": True,
            "deviceConfig": {
                "manufacturer": "Silicon Labs (dev board)",
                "label": "Silabs LR Dev (hack)",
                "description": "Dev board",
            },
        }]

    @pytest.mark.asyncio
    async def test_get_node(self, ready_context):
        response = await _ask(ready_context, type="GET_NODE", nodeId="2")
        assert response["type"] == "NODE"
        assert response["data"]["id"] == 2

    @pytest.mark.asyncio
    async def test_get_unknown_node(self, ready_context):
        response = await _ask(ready_context, type="GET_NODE", nodeId=77)
        assert response["message"] == "Node not found"

    @pytest.mark.asyncio
    async def test_get_node_invalid_id(self, ready_context):
        response = await _ask(ready_context, type="GET_NODE", nodeId="two")
        assert response["message"] == "Invalid nodeId"

    @pytest.mark.asyncio
    async def test_create_device_config(self, ready_context, settings):
        response = await _ask(ready_context, type="CREATE_DEVICE_CONFIG", nodeId=2)
        assert response["type"] == "DEVICE_CONFIG_CREATED"
        assert response["data"]["nodeId"] == 2
        assert response["data"]["path"].endswith("node-2-0000.json")
        assert response["data"]["path"].startswith(settings.device_config_dir)


class TestVendorCommands:
    @pytest.mark.asyncio
    async def test_send_command(self, ready_context, device):
        response = await _ask(
            ready_context, type="SEND_COMMAND", requestId="c", payloadHex=PAYLOAD_HEX, manufacturerId="0x1234",
        )
        assert response["type"] == "COMMAND_RESULT"
        assert response["data"]["nodeId"] == 2
        assert response["data"]["manufacturerId"] == 0x1234
        assert response["data"]["count"] == 1
        assert device.api.calls == [(0x1234, bytes.fromhex(PAYLOAD_HEX))]

    @pytest.mark.asyncio
    async def test_send_command_bad_payload(self, ready_context, device):
        response = await _ask(ready_context, type="SEND_COMMAND", payloadHex="ab" * 30)
        assert response["type"] == "ERROR"
        assert response["message"].startswith("Invalid payloadHex format")
        assert device.api.calls == []

    @pytest.mark.asyncio
    async def test_send_command_requires_payload(self, ready_context):
        response = await _ask(ready_context, type="SEND_COMMAND")
        assert response["message"] == "payloadHex is required"

    @pytest.mark.asyncio
    async def test_send_random(self, ready_context, device):
        response = await _ask(ready_context, type="SEND_RANDOM_COMMAND", count=2)
        assert response["type"] == "COMMAND_RESULT"
        assert response["data"]["vendorPayloadHex"] is None
        assert len(response["data"]["results"]) == 2
        assert len(device.api.calls) == 2


class TestConnection:
    @pytest.mark.asyncio
    async def test_greeting_and_request(self, context):
        ws = FakeWebSocket()
        task = asyncio.create_task(context.router.handle_connection(ws))
        await _wait_for(lambda: ws.sent)
        assert ws.accepted
        assert ws.sent[0]["type"] == "CONNECTED"
        assert ws.sent[0]["message"] == "Connected to Z-Wave middleware"

        ws.feed({"type": "PING", "requestId": "x"})
        await _wait_for(lambda: "PONG" in ws.types())
        ws.disconnect()
        await task
        assert context.router.clients == set()

    @pytest.mark.asyncio
    async def test_driver_ready_sent_on_connect(self, ready_context):
        ws = FakeWebSocket()
        task = asyncio.create_task(ready_context.router.handle_connection(ws))
        await _wait_for(lambda: len(ws.sent) >= 2)
        assert ws.types()[:2] == ["CONNECTED", "DRIVER_READY"]
        ws.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_events_broadcast_to_all_clients(self, ready_context, device):
        sockets = [FakeWebSocket(), FakeWebSocket()]
        tasks = [asyncio.create_task(ready_context.router.handle_connection(ws)) for ws in sockets]
        await _wait_for(lambda: len(ready_context.router.clients) == 2)

        await ready_context.bus.publish(NodeAdded(9))
        await ready_context.bus.publish(NodeStatusChanged(9, "Dead"))
        await ready_context.bus.publish(DriverError("radio jammed"))
        await device.command_handler(InboundCommand(0x91, b"\xaa\xbb", vendor_id=0))

        for ws in sockets:
            await _wait_for(lambda: "MANUFACTURER_PROPRIETARY_COMMAND" in ws.types())
            by_type = {m["type"]: m for m in ws.sent}
            assert by_type["NODE_ADDED"]["nodeId"] == 9
            assert by_type["NODE_STATUS_CHANGED"]["status"] == "Dead"
            assert by_type["ERROR"]["message"] == "radio jammed"
            vendor = by_type["MANUFACTURER_PROPRIETARY_COMMAND"]["data"]
            assert vendor["payloadHex"] == "aabb"
            assert vendor["payloadLength"] == 2
            ws.disconnect()
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_node_and_command_class_events_broadcast(self, ready_context):
        ws = FakeWebSocket()
        task = asyncio.create_task(ready_context.router.handle_connection(ws))
        await _wait_for(lambda: ready_context.router.clients)

        bus = ready_context.bus
        await bus.publish(ExclusionStarted())
        await bus.publish(NodeFound(7, supported_ccs=(0x5E,)))
        await bus.publish(NodeValueUpdated(2, 0x62, "currentMode", 255))
        await bus.publish(NodeNotification(2, 0x71, "Keypad unlock operation", {"userId": 3}))
        await bus.publish(CommandClassCommandReceived(2, 0x71, b"\x05\x01", 1))

        by_type = {m["type"]: m for m in ws.sent}
        assert "EXCLUSION_STARTED" in by_type
        assert by_type["NODE_FOUND"]["nodeId"] == 7
        assert by_type["NODE_FOUND"]["supportedCCs"] == [0x5E]
        value = by_type["NODE_VALUE_UPDATED"]
        assert (value["nodeId"], value["commandClass"], value["property"], value["newValue"]) == (
            2, 0x62, "currentMode", 255
        )
        notification = by_type["NODE_NOTIFICATION"]
        assert notification["notificationLabel"] == "Keypad unlock operation"
        assert notification["parameters"] == {"userId": 3}
        assert by_type["COMMAND_CLASS_COMMAND"]["data"] == {
            "nodeId": 2,
            "commandClassId": 0x71,
            "payload": [5, 1],
            "payloadHex": "0501",
            "endpointIndex": 1,
        }

        ws.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_failed_client_dropped_from_broadcast(self, ready_context):
        good, bad = FakeWebSocket(), FakeWebSocket()
        tasks = [asyncio.create_task(ready_context.router.handle_connection(ws)) for ws in (good, bad)]
        await _wait_for(lambda: len(ready_context.router.clients) == 2)

        bad.fail_sends = True
        await ready_context.bus.publish(NodeAdded(3))
        assert len(ready_context.router.clients) == 1
        assert "NODE_ADDED" in good.types()

        good.disconnect()
        bad.disconnect()
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_closed_socket_skipped(self, ready_context):
        ws = FakeWebSocket()
        task = asyncio.create_task(ready_context.router.handle_connection(ws))
        await _wait_for(lambda: ready_context.router.clients)
        ws.client_state = WebSocketState.DISCONNECTED
        sent_before = len(ws.sent)
        await ready_context.router.broadcast(make_message("ALL_NODES_READY"))
        assert len(ws.sent) == sent_before
        ws.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_binary_frame_answered(self, context):
        ws = FakeWebSocket()
        task = asyncio.create_task(context.router.handle_connection(ws))
        await _wait_for(lambda: ws.sent)

        ws.feed_bytes(b'{"type": "PING", "requestId": "b"}')
        await _wait_for(lambda: "PONG" in ws.types())
        ws.feed_bytes(b"not json")
        await _wait_for(lambda: "ERROR" in ws.types())
        assert ws.sent[-1]["message"] == "Invalid message format"
        assert len(context.router.clients) == 1

        ws.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_start_failure_broadcast_to_all_clients(self, context, factory):
        requester, watcher = FakeWebSocket(), FakeWebSocket()
        tasks = [asyncio.create_task(context.router.handle_connection(ws)) for ws in (requester, watcher)]
        await _wait_for(lambda: len(context.router.clients) == 2)

        factory.fail_build = OSError("connection refused")
        requester.feed({"type": "START", "requestId": "s"})
        await _wait_for(lambda: any(m.get("requestId") == "s" for m in requester.sent))
        await _wait_for(lambda: "ERROR" in watcher.types())
        assert "connection refused" in watcher.sent[-1]["message"]

        for ws in (requester, watcher):
            ws.disconnect()
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_disconnect_during_start_does_not_wedge_lifecycle(self, context, factory):
        hold = asyncio.Event()
        factory.driver_kwargs = {"hold_start": hold}
        ws = FakeWebSocket()
        task = asyncio.create_task(context.router.handle_connection(ws))
        await _wait_for(lambda: ws.sent)

        ws.feed({"type": "START", "requestId": "s"})
        await _wait_for(lambda: factory.created and factory.driver.started)
        ws.disconnect()
        await task
        await _wait_for(lambda: factory.driver.stopped)
        assert context.lifecycle.state.value == "Uninitialized"

        factory.driver_kwargs = {}
        response = await _ask(context, type="START", requestId="again")
        assert response["type"] == "START_SUCCESS"
        assert context.lifecycle.is_ready
