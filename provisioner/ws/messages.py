"""Inbound message decoding for the relay socket protocol.

Clients send ``{"type": ..., "requestId": ..., ...params}``. Parameters may
sit at the root or be nested under ``data`` or ``entry``; :func:`decode_request`
folds all three into one flat :class:`RelayRequest` so handlers never look at
the raw frame. Per-command models below then validate the parameters.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from provisioner.errors import ValidationError
from provisioner.vendor.sender import DEFAULT_NODE_ID, DEFAULT_RANDOM_COUNT, DEFAULT_VENDOR_ID

logger = logging.getLogger(__name__)

_ENVELOPE_KEYS = ("type", "requestId", "data", "entry")

M = TypeVar("M", bound=BaseModel)


class MalformedMessage(ValidationError):
    """Raised for frames that cannot be routed at all."""

    def __init__(self, message: str, request_id: Any = None) -> None:
        super().__init__(message)
        self.request_id = request_id


@dataclass
class RelayRequest:
    type: str
    request_id: Any = None
    params: dict[str, Any] = field(default_factory=dict)


def decode_request(message: str | bytes | dict) -> RelayRequest:
    """Parse one inbound frame into a :class:`RelayRequest`."""
    if isinstance(message, (str, bytes, bytearray)):
        try:
            message = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise MalformedMessage("Invalid message format") from None
    if not isinstance(message, dict):
        raise MalformedMessage("Invalid message format")

    request_id = message.get("requestId")
    msg_type = message.get("type")
    if not msg_type or not isinstance(msg_type, str):
        raise MalformedMessage("Message must have a 'type' field", request_id)

    params = {k: v for k, v in message.items() if k not in _ENVELOPE_KEYS}
    for nested in ("data", "entry"):
        if isinstance(message.get(nested), dict):
            params.update(message[nested])
    return RelayRequest(type=msg_type, request_id=request_id, params=params)


def parse_params(model: type[M], request: RelayRequest) -> M:
    """Validate *request* params against *model*, raising the relay's ValidationError."""
    try:
        return model.model_validate(request.params)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc)) from None


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    ctx_error = (err.get("ctx") or {}).get("error")
    if ctx_error is not None:
        return str(ctx_error)
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"Invalid {loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def _int_or_none(value: Any, name: str, base: int = 10) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid {name}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            if base == 16:
                return int(text[2:] if text.lower().startswith("0x") else text, 16)
            return int(text, 0) if text.lower().startswith("0x") else int(text)
        except ValueError:
            pass
    raise ValueError(f"Invalid {name}")


# ── Per-command parameter models ─────────────────────────────────


class _Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DskParams(_Params):
    dsk: str | None = None

    def require_dsk(self) -> str:
        if not self.dsk:
            raise ValidationError("DSK is required")
        return self.dsk


class AddEntryParams(_Params):
    """Entry fields for ``ADD_PROVISIONING_ENTRY``.

    Unknown keys are kept so top-level security flags (``s2AccessControl``
    and friends) reach the provisioning manager.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    dsk: str | None = None
    name: str | None = None
    location: str | None = None
    protocol: Any = None
    active: Any = None
    status: Any = None
    security_classes: Any = Field(default=None, alias="securityClasses")
    supported_protocols: list[Any] | None = Field(default=None, alias="supportedProtocols")
    manufacturer_id: Any = Field(default=None, alias="manufacturerId")
    product_type: Any = Field(default=None, alias="productType")
    product_id: Any = Field(default=None, alias="productId")
    application_version: str | None = Field(default=None, alias="applicationVersion")

    def to_request(self) -> dict[str, Any]:
        if not self.dsk:
            raise ValidationError("DSK is required")
        return self.model_dump(by_alias=True, exclude_none=True)


class EntryStatusParams(DskParams):
    active: Any = None

    def require_active(self) -> bool:
        if not isinstance(self.active, bool):
            raise ValidationError("active must be a boolean")
        return self.active


class DeleteEntryParams(DskParams):
    node_id: int | None = Field(default=None, alias="nodeId")

    @field_validator("node_id", mode="before")
    @classmethod
    def parse_node_id(cls, value: Any) -> int | None:
        return _int_or_none(value, "nodeId")

    def target(self) -> str | int:
        if self.dsk:
            return self.dsk
        if self.node_id is not None:
            return self.node_id
        raise ValidationError("DSK is required")


class NodeParams(_Params):
    node_id: int | None = Field(default=None, alias="nodeId")

    @field_validator("node_id", mode="before")
    @classmethod
    def parse_node_id(cls, value: Any) -> int | None:
        return _int_or_none(value, "nodeId")

    def require_node_id(self) -> int:
        if self.node_id is None:
            raise ValidationError("Invalid nodeId")
        return self.node_id


class StartParams(_Params):
    port: str | None = None


class SendRandomParams(_Params):
    node_id: int = Field(default=DEFAULT_NODE_ID, alias="nodeId")
    manufacturer_id: int = Field(default=DEFAULT_VENDOR_ID, alias="manufacturerId")
    count: int = DEFAULT_RANDOM_COUNT

    @field_validator("node_id", mode="before")
    @classmethod
    def parse_node_id(cls, value: Any) -> int:
        parsed = _int_or_none(value, "nodeId")
        return DEFAULT_NODE_ID if not parsed else parsed

    @field_validator("manufacturer_id", mode="before")
    @classmethod
    def parse_manufacturer_id(cls, value: Any) -> int:
        parsed = _int_or_none(value, "manufacturerId", base=16)
        return DEFAULT_VENDOR_ID if parsed is None else parsed

    @field_validator("count", mode="before")
    @classmethod
    def parse_count(cls, value: Any) -> int:
        try:
            parsed = _int_or_none(value, "count")
        except ValueError:
            parsed = None
        return DEFAULT_RANDOM_COUNT if parsed is None else parsed


class SendCommandParams(SendRandomParams):
    payload_hex: str | None = Field(default=None, alias="payloadHex")
    count: int = 1

    @field_validator("count", mode="before")
    @classmethod
    def parse_count(cls, value: Any) -> int:
        try:
            parsed = _int_or_none(value, "count")
        except ValueError:
            parsed = None
        return parsed or 1

    def require_payload(self) -> str:
        if not self.payload_hex:
            raise ValidationError("payloadHex is required")
        return self.payload_hex
