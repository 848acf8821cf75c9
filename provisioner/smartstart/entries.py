"""SmartStart provisioning entry manager.

Entries live in the driver's store; nothing is cached here. Every read goes
back to the store and joins in live device state for entries whose device
has already been included.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from provisioner.driver.base import (
    ControllerDriver,
    EntryStatus,
    NodeStatus,
    ZWaveProtocol,
)
from provisioner.driver.lifecycle import DriverLifecycle
from provisioner.errors import NotFoundError, ValidationError
from provisioner.smartstart.dsk import normalize_dsk
from provisioner.smartstart.security import decode_security_classes, encode_security_classes

logger = logging.getLogger(__name__)

_PROTOCOL_WORD_RE = re.compile(r"[\s_-]")

# Top-level flag names a client may send next to (or instead of) securityClasses
_TOP_LEVEL_FLAGS = ("s2Unauthenticated", "s2Authenticated", "s2AccessControl", "s0Legacy")


def parse_protocol(value: Any) -> ZWaveProtocol:
    """Map a protocol value from a client or the store to :class:`ZWaveProtocol`."""
    if isinstance(value, bool):
        return ZWaveProtocol.ZWAVE
    if isinstance(value, int):
        return ZWaveProtocol.ZWAVE_LONG_RANGE if value == 1 else ZWaveProtocol.ZWAVE
    if isinstance(value, str):
        squashed = _PROTOCOL_WORD_RE.sub("", value).lower()
        if squashed.endswith("longrange") or squashed == "1":
            return ZWaveProtocol.ZWAVE_LONG_RANGE
    return ZWaveProtocol.ZWAVE


def _is_active(value: Any) -> bool:
    return value is True or value in ("true", "active")


def _optional_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 0)
    except ValueError:
        raise ValidationError(f"Invalid integer value: {value!r}") from None


@dataclass
class ProvisioningEntry:
    dsk: str
    name: str = ""
    location: str = ""
    protocol: ZWaveProtocol = ZWaveProtocol.ZWAVE
    active: bool = False
    security_classes: tuple[int, ...] = ()
    supported_protocols: tuple[int, ...] = ()
    manufacturer_id: int | None = None
    product_type: int | None = None
    product_id: int | None = None
    application_version: str | None = None
    node_id: int | None = None
    device_info: dict | None = field(default=None, compare=False)

    @classmethod
    def from_store(cls, raw: Mapping) -> ProvisioningEntry:
        """Build from the driver's stored shape (integer status/protocol/classes)."""
        return cls(
            dsk=raw.get("dsk", ""),
            name=raw.get("name") or "",
            location=raw.get("location") or "",
            protocol=parse_protocol(raw.get("protocol")),
            active=raw.get("status") == EntryStatus.ACTIVE,
            security_classes=encode_security_classes(raw.get("securityClasses") or []),
            supported_protocols=tuple(int(parse_protocol(p)) for p in raw.get("supportedProtocols") or ()),
            manufacturer_id=raw.get("manufacturerId"),
            product_type=raw.get("productType"),
            product_id=raw.get("productId"),
            application_version=raw.get("applicationVersion"),
            node_id=raw.get("nodeId") or None,
        )

    def to_store(self) -> dict:
        """Shape handed to :meth:`ProvisioningStore.provision`."""
        stored = {
            "dsk": self.dsk,
            "name": self.name,
            "location": self.location,
            "status": int(EntryStatus.ACTIVE if self.active else EntryStatus.INACTIVE),
            "protocol": int(self.protocol),
            "securityClasses": list(self.security_classes),
            "supportedProtocols": list(self.supported_protocols),
        }
        optional = {
            "manufacturerId": self.manufacturer_id,
            "productType": self.product_type,
            "productId": self.product_id,
            "applicationVersion": self.application_version,
            "nodeId": self.node_id,
        }
        stored.update({k: v for k, v in optional.items() if v is not None})
        return stored

    def to_dict(self) -> dict:
        """Wire shape sent to clients."""
        return {
            "dsk": self.dsk,
            "name": self.name,
            "location": self.location,
            "active": self.active,
            "status": self.active,
            "protocol": "ZWaveLongRange" if self.protocol is ZWaveProtocol.ZWAVE_LONG_RANGE else "ZWave",
            "nodeId": self.node_id,
            "securityClasses": decode_security_classes(self.security_classes).to_dict(),
            "supportedProtocols": list(self.supported_protocols),
            "manufacturerId": self.manufacturer_id,
            "productType": self.product_type,
            "productId": self.product_id,
            "applicationVersion": self.application_version,
            "deviceInfo": self.device_info,
        }


class ProvisioningManager:
    """List, look up, upsert, toggle and remove SmartStart entries."""

    def __init__(self, lifecycle: DriverLifecycle) -> None:
        self._lifecycle = lifecycle

    # ── Reads ─────────────────────────────────────────────────────

    async def list(self) -> list[ProvisioningEntry]:
        driver = self._lifecycle.require_ready()
        raw_entries = await driver.provisioning.get_entries()
        return [self._enrich(driver, ProvisioningEntry.from_store(raw)) for raw in raw_entries]

    async def get(self, dsk: str) -> ProvisioningEntry:
        driver = self._lifecycle.require_ready()
        if not dsk:
            raise ValidationError("DSK is required")
        raw = await driver.provisioning.get_entry(normalize_dsk(dsk))
        if raw is None:
            raise NotFoundError("Entry not found")
        return self._enrich(driver, ProvisioningEntry.from_store(raw))

    # ── Writes ────────────────────────────────────────────────────

    async def add(self, request: Mapping[str, Any]) -> ProvisioningEntry:
        """Insert or update the entry described by *request*.

        *request* uses the client field names (``dsk``, ``securityClasses``,
        ``supportedProtocols`` ...). A new entry that lists Long Range among
        its supported protocols is always stored inactive.
        """
        raw_dsk = request.get("dsk")
        if not raw_dsk:
            raise ValidationError("DSK is required")
        driver = self._lifecycle.require_ready()

        dsk = normalize_dsk(raw_dsk)
        if dsk != raw_dsk:
            logger.info("Normalized DSK %r -> %r", raw_dsk, dsk)

        existing = await driver.provisioning.get_entry(dsk)
        is_new = existing is None
        logger.info("%s provisioning entry %s", "Creating" if is_new else "Updating", dsk)

        supported = tuple(int(parse_protocol(p)) for p in request.get("supportedProtocols") or ())
        if is_new and ZWaveProtocol.ZWAVE_LONG_RANGE in supported:
            active = False
        else:
            requested = request["active"] if request.get("active") is not None else request.get("status")
            active = _is_active(requested)

        top_level = {k: request[k] for k in _TOP_LEVEL_FLAGS if k in request}
        entry = ProvisioningEntry(
            dsk=dsk,
            name=request.get("name") or "",
            location=request.get("location") or "",
            protocol=parse_protocol(request.get("protocol")),
            active=active,
            security_classes=encode_security_classes(request.get("securityClasses"), top_level),
            supported_protocols=supported,
            manufacturer_id=_optional_int(request.get("manufacturerId")),
            product_type=_optional_int(request.get("productType")),
            product_id=_optional_int(request.get("productId")),
            application_version=request.get("applicationVersion"),
            node_id=existing.get("nodeId") if existing else None,
        )
        if entry.protocol is ZWaveProtocol.ZWAVE_LONG_RANGE and entry.security_classes:
            logger.info(
                "Long Range entry %s with security classes %s; the driver validates them",
                dsk, list(entry.security_classes),
            )

        await driver.provisioning.provision(entry.to_store())

        stored = await driver.provisioning.get_entry(dsk)
        if stored is None:
            logger.warning("Entry %s not found after provisioning", dsk)
            return entry
        logger.info("Entry %s %s (status %s)", dsk, "added" if is_new else "updated", stored.get("status"))
        return self._enrich(driver, ProvisioningEntry.from_store(stored))

    async def set_active(self, dsk: str, active: bool) -> ProvisioningEntry:
        driver = self._lifecycle.require_ready()
        normalized = normalize_dsk(dsk)
        raw = await driver.provisioning.get_entry(normalized)
        if raw is None:
            raise NotFoundError(f"Provisioning entry not found for DSK: {normalized}")

        updated = dict(raw)
        updated["status"] = int(EntryStatus.ACTIVE if active else EntryStatus.INACTIVE)
        logger.info("Setting entry %s %s", normalized, "active" if active else "inactive")
        await driver.provisioning.provision(updated)
        return ProvisioningEntry.from_store(updated)

    async def remove(self, dsk_or_node_id: str | int) -> None:
        driver = self._lifecycle.require_ready()
        key = normalize_dsk(dsk_or_node_id) if isinstance(dsk_or_node_id, str) else dsk_or_node_id
        if await driver.provisioning.get_entry(key) is None:
            raise NotFoundError(f"Provisioning entry not found: {key}")
        logger.info("Unprovisioning SmartStart entry %s", key)
        await driver.provisioning.unprovision(key)

    # ── Helpers ───────────────────────────────────────────────────

    @staticmethod
    def _enrich(driver: ControllerDriver, entry: ProvisioningEntry) -> ProvisioningEntry:
        device = driver.get_device(entry.node_id) if entry.node_id else None
        if device is None:
            entry.device_info = None
            return entry
        try:
            status = NodeStatus(device.status).label
        except ValueError:
            status = "Unknown"
        entry.device_info = {
            "id": device.id,
            "name": device.name,
            "status": status,
            "deviceConfig": device.device_config.to_dict() if device.device_config else None,
        }
        return entry
