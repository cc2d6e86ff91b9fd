from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional


# -----------------------------
# Device IDs
# -----------------------------
# 128 bit UUIDs, base64url encoded without padding
DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{22}$")
DEVICE_ID_BYTES = 16


# -----------------------------
# Interface types
# -----------------------------
DATASTREAM = "datastream"
PROPERTIES = "properties"
INDIVIDUAL = "individual"
OBJECT = "object"

INTERFACE_TYPES = {DATASTREAM, PROPERTIES}


# -----------------------------
# Exceptions
# -----------------------------
class GateError(Exception):
    pass


class InvalidDeviceId(GateError):
    pass


class InterfaceNotFound(GateError):
    pass


class UnsupportedInterface(GateError):
    pass


# -----------------------------
# Interface description
# -----------------------------
@dataclass(frozen=True)
class InterfaceDescription:
    name: str
    major: int
    minor: int
    type: str
    aggregation: str = INDIVIDUAL

    @property
    def is_datastream(self) -> bool:
        return self.type == DATASTREAM

    @property
    def is_aggregate(self) -> bool:
        return self.aggregation == OBJECT

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "InterfaceDescription":
        name = data.get("interface_name")
        iface_type = data.get("type")
        if not isinstance(name, str) or not isinstance(iface_type, str):
            raise UnsupportedInterface(f"Malformed interface description: {dict(data)!r}")
        if iface_type not in INTERFACE_TYPES:
            raise UnsupportedInterface(f"{name} has unknown interface type {iface_type!r}")
        return cls(
            name=name,
            major=int(data.get("version_major", 0)),
            minor=int(data.get("version_minor", 0)),
            type=iface_type,
            aggregation=data.get("aggregation") or INDIVIDUAL,
        )


# -----------------------------
# Validators
# -----------------------------
def is_valid_device_id(device_id: Optional[str]) -> bool:
    if not device_id or not DEVICE_ID_RE.match(device_id):
        return False
    try:
        decoded = base64.urlsafe_b64decode(device_id + "==")
    except (binascii.Error, ValueError):
        return False
    return len(decoded) == DEVICE_ID_BYTES


def validate_device_id(device_id: str) -> str:
    if not is_valid_device_id(device_id):
        raise InvalidDeviceId(f"{device_id} is not a valid Astarte Device ID")
    return device_id


def require_introspected(device_id: str, introspection: Mapping[str, Any], interface_name: str) -> Any:
    """
    Return the introspection entry for interface_name.
    Fails closed when the device does not declare the interface.
    """
    entry = introspection.get(interface_name)
    if entry is None:
        raise InterfaceNotFound(f"Device {device_id} has no interface named {interface_name}")
    return entry


def require_datastream(interface: InterfaceDescription) -> None:
    if not interface.is_datastream:
        raise UnsupportedInterface(
            f"{interface.name} is not a Datastream interface. "
            "get-samples works only on Datastream interfaces"
        )
