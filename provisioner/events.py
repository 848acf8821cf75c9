"""Typed event channel between the driver, the relay components and the router.

Producers call :meth:`EventBus.publish`; subscribers register per event
class. Handlers for one event run sequentially in subscription order, so a
subscriber registered earlier always observes an event before a later one.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)


class Event:
    """Marker base class for bus events."""


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], "Awaitable[None] | None"]


# ── Driver lifecycle ──────────────────────────────────────────────


@dataclass(frozen=True)
class DriverReady(Event):
    pass


@dataclass(frozen=True)
class DriverError(Event):
    message: str


@dataclass(frozen=True)
class DriverStopped(Event):
    pass


@dataclass(frozen=True)
class AllNodesReady(Event):
    pass


# ── Controller / node ─────────────────────────────────────────────


@dataclass(frozen=True)
class NodeAdded(Event):
    node_id: int


@dataclass(frozen=True)
class NodeRemoved(Event):
    node_id: int


@dataclass(frozen=True)
class NodeReady(Event):
    node_id: int


@dataclass(frozen=True)
class NodeStatusChanged(Event):
    node_id: int
    status: str


@dataclass(frozen=True)
class InclusionStarted(Event):
    strategy: Any = None


@dataclass(frozen=True)
class InclusionFailed(Event):
    pass


@dataclass(frozen=True)
class InclusionStopped(Event):
    pass


@dataclass(frozen=True)
class ExclusionStarted(Event):
    pass


@dataclass(frozen=True)
class ExclusionFailed(Event):
    pass


@dataclass(frozen=True)
class ExclusionStopped(Event):
    pass


@dataclass(frozen=True)
class NodeFound(Event):
    """A node answered during inclusion, before interview."""

    node_id: int
    device_class: Any = None
    supported_ccs: tuple = ()
    controlled_ccs: tuple = ()


@dataclass(frozen=True)
class NodeValueUpdated(Event):
    node_id: int
    command_class: int | None
    prop: Any
    new_value: Any = None


@dataclass(frozen=True)
class NodeNotification(Event):
    node_id: int
    cc_id: int | None
    label: str | None = None
    parameters: Any = None


# ── Inbound command frames ────────────────────────────────────


@dataclass(frozen=True)
class VendorCommandReceived(Event):
    node_id: int
    vendor_id: int | None
    payload: bytes
    endpoint_index: int = 0

    @property
    def payload_length(self) -> int:
        return len(self.payload)

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "manufacturerId": self.vendor_id,
            "payload": list(self.payload),
            "payloadHex": self.payload.hex(),
            "payloadLength": self.payload_length,
            "endpointIndex": self.endpoint_index,
        }


@dataclass(frozen=True)
class CommandClassCommandReceived(Event):
    """Inbound frame for any class other than Manufacturer Proprietary."""

    node_id: int
    cc_id: int
    payload: bytes = b""
    endpoint_index: int = 0

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "commandClassId": self.cc_id,
            "payload": list(self.payload),
            "payloadHex": self.payload.hex(),
            "endpointIndex": self.endpoint_index,
        }


class EventBus:
    """Explicit publish/subscribe channel keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None] | None]) -> Callable[[], None]:
        """Register *handler* for *event_type*; returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    async def publish(self, event: Event) -> None:
        """Deliver *event* to every subscriber of its class, in order.

        A failing handler is logged and does not stop delivery to the rest.
        """
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in %s handler", type(event).__name__)
