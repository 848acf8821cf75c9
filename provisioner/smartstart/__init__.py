"""SmartStart provisioning: DSK handling, security classes, entry management."""

from provisioner.smartstart.dsk import normalize_dsk
from provisioner.smartstart.entries import ProvisioningEntry, ProvisioningManager
from provisioner.smartstart.security import (
    SecurityClass,
    SecurityFlags,
    decode_security_classes,
    encode_security_classes,
    grant_security_classes,
)

__all__ = [
    "normalize_dsk",
    "ProvisioningEntry",
    "ProvisioningManager",
    "SecurityClass",
    "SecurityFlags",
    "decode_security_classes",
    "encode_security_classes",
    "grant_security_classes",
]
