"""Python client for the relay socket protocol.

Requests are tagged with a ``requestId`` and resolved when the matching
response arrives; frames without a pending ``requestId`` (broadcast events)
go to handlers registered with :meth:`RelayClient.on`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]


class RelayClientError(Exception):
    """Raised when the relay answers a request with ``ERROR``."""

    def __init__(self, message: str, response: dict | None = None) -> None:
        super().__init__(message)
        self.response = response or {}


class RelayClient:
    """WebSocket client for a running provisioner relay."""

    def __init__(self, url: str = "ws://localhost:3001/ws", timeout: float = 60.0) -> None:
        self.url = url
        self.timeout = timeout
        self._ws: Optional[ClientConnection] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._handlers: dict[str, MessageHandler] = {}
        self._listener: asyncio.Task | None = None

    def on(self, msg_type: str, handler: MessageHandler) -> None:
        """Register a handler for a broadcast message type."""
        self._handlers[msg_type] = handler

    async def connect(self) -> dict:
        """Connect and return the relay's ``CONNECTED`` greeting."""
        self._ws = await websockets.connect(self.url, close_timeout=5)
        greeting = json.loads(await asyncio.wait_for(self._ws.recv(), timeout=10))
        if greeting.get("type") != "CONNECTED":
            await self.close()
            raise RelayClientError(f"Unexpected greeting: {greeting.get('type')}", greeting)
        self._listener = asyncio.create_task(self._listen())
        logger.info("Connected to relay at %s", self.url)
        return greeting

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RelayClientError("Connection closed"))
        self._pending.clear()

    async def __aenter__(self) -> RelayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def request(self, msg_type: str, **params: Any) -> dict:
        """Send a request and wait for its response.

        Returns the full response frame; raises :class:`RelayClientError`
        for ``ERROR`` responses.
        """
        if self._ws is None:
            raise RelayClientError("Not connected")
        request_id = uuid.uuid4().hex[:12]
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({"type": msg_type, "requestId": request_id, **params}))
            response = await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._pending.pop(request_id, None)
        if response.get("type") == "ERROR":
            raise RelayClientError(response.get("message", "Unknown error"), response)
        return response

    # ── Convenience wrappers ──────────────────────────────────────

    async def ping(self) -> dict:
        return await self.request("PING")

    async def status(self) -> dict:
        return (await self.request("GET_STATUS"))["data"]

    async def start(self, port: str | None = None) -> dict:
        params = {"port": port} if port else {}
        return (await self.request("START", **params))["data"]

    async def stop(self) -> dict:
        return (await self.request("STOP"))["data"]

    async def nodes(self) -> list[dict]:
        return (await self.request("GET_NODES"))["data"]

    async def node(self, node_id: int) -> dict:
        return (await self.request("GET_NODE", nodeId=node_id))["data"]

    async def entries(self) -> list[dict]:
        return (await self.request("GET_PROVISIONING_ENTRIES"))["data"]

    async def entry(self, dsk: str) -> dict:
        return (await self.request("GET_PROVISIONING_ENTRY", dsk=dsk))["data"]

    async def add_entry(self, **entry: Any) -> dict:
        return (await self.request("ADD_PROVISIONING_ENTRY", entry=entry))["data"]

    async def set_entry_active(self, dsk: str, active: bool) -> dict:
        return (await self.request("UPDATE_PROVISIONING_ENTRY_STATUS", dsk=dsk, active=active))["data"]

    async def delete_entry(self, dsk: str | None = None, node_id: int | None = None) -> dict:
        """Delete by DSK, or by the node id the entry was included as."""
        if dsk is None and node_id is None:
            raise ValueError("dsk or node_id is required")
        params: dict[str, Any] = {"dsk": dsk} if dsk else {"nodeId": node_id}
        return (await self.request("DELETE_PROVISIONING_ENTRY", **params))["data"]

    async def send_command(
        self, payload_hex: str, node_id: int = 2, manufacturer_id: int = 0, count: int = 1
    ) -> dict:
        return (await self.request(
            "SEND_COMMAND",
            payloadHex=payload_hex,
            nodeId=node_id,
            manufacturerId=manufacturer_id,
            count=count,
        ))["data"]

    async def send_random_command(self, node_id: int = 2, manufacturer_id: int = 0, count: int = 5) -> dict:
        return (await self.request(
            "SEND_RANDOM_COMMAND", nodeId=node_id, manufacturerId=manufacturer_id, count=count
        ))["data"]

    async def create_device_config(self, node_id: int) -> dict:
        return (await self.request("CREATE_DEVICE_CONFIG", nodeId=node_id))["data"]

    # ── Internal ──────────────────────────────────────────────────

    async def _listen(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring non-JSON frame from relay")
                    continue
                await self._route(msg)
        except websockets.ConnectionClosed:
            logger.info("Relay connection closed")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(RelayClientError("Connection closed"))

    async def _route(self, msg: dict) -> None:
        request_id = msg.get("requestId")
        future = self._pending.get(request_id) if request_id is not None else None
        if future is not None:
            if not future.done():
                future.set_result(msg)
            return

        handler = self._handlers.get(msg.get("type", ""))
        if handler is None:
            logger.debug("Unhandled message type: %s", msg.get("type"))
            return
        try:
            await handler(msg)
        except Exception:
            logger.exception("Handler error for %s", msg.get("type"))
