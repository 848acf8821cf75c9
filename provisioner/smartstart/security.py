"""S2 security-class codec.

The driver stores security classes as a list of integer ids; clients send
them as a flags object, as individual top-level flags, or both. Everything is
folded into one canonical ascending tuple.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)


class SecurityClass(IntEnum):
    S2_UNAUTHENTICATED = 0
    S2_AUTHENTICATED = 1
    S2_ACCESS_CONTROL = 2
    S0_LEGACY = 7


VALID_IDS = frozenset(int(sc) for sc in SecurityClass)

# Network key name (as configured) per class
KEY_NAMES = {
    SecurityClass.S2_UNAUTHENTICATED: "S2_Unauthenticated",
    SecurityClass.S2_AUTHENTICATED: "S2_Authenticated",
    SecurityClass.S2_ACCESS_CONTROL: "S2_AccessControl",
    SecurityClass.S0_LEGACY: "S0_Legacy",
}

# Accepted mapping keys per class
_FLAG_KEYS = {
    SecurityClass.S2_UNAUTHENTICATED: ("s2Unauthenticated", "unauthenticated"),
    SecurityClass.S2_AUTHENTICATED: ("s2Authenticated", "authenticated"),
    SecurityClass.S2_ACCESS_CONTROL: ("s2AccessControl", "accessControl"),
    SecurityClass.S0_LEGACY: ("s0Legacy", "legacyS0"),
}


def _asserted(value: Any) -> bool:
    return value is True or value == "true"


@dataclass(frozen=True)
class SecurityFlags:
    unauthenticated: bool = False
    authenticated: bool = False
    access_control: bool = False
    legacy_s0: bool = False

    def ids(self) -> tuple[int, ...]:
        out = []
        if self.unauthenticated:
            out.append(int(SecurityClass.S2_UNAUTHENTICATED))
        if self.authenticated:
            out.append(int(SecurityClass.S2_AUTHENTICATED))
        if self.access_control:
            out.append(int(SecurityClass.S2_ACCESS_CONTROL))
        if self.legacy_s0:
            out.append(int(SecurityClass.S0_LEGACY))
        return tuple(out)

    def to_dict(self) -> dict[str, bool]:
        """Wire form used in provisioning entries sent to clients."""
        return {
            "s2Unauthenticated": self.unauthenticated,
            "s2Authenticated": self.authenticated,
            "s2AccessControl": self.access_control,
            "s0Legacy": self.legacy_s0,
        }


def _ids_from_mapping(flags: Mapping) -> set[int]:
    found = set()
    for sc, keys in _FLAG_KEYS.items():
        if any(_asserted(flags.get(k)) for k in keys):
            found.add(int(sc))
    return found


def _ids_from_source(source: Any) -> set[int]:
    if source is None:
        return set()
    if isinstance(source, SecurityFlags):
        return set(source.ids())
    if isinstance(source, Mapping):
        return _ids_from_mapping(source)
    if isinstance(source, (list, tuple, set, frozenset)):
        return {
            int(v) for v in source
            if isinstance(v, int) and not isinstance(v, bool) and int(v) in VALID_IDS
        }
    logger.warning("Ignoring unrecognized security class source: %r", source)
    return set()


def encode_security_classes(*sources: Any) -> tuple[int, ...]:
    """Union of every source as an ascending tuple of class ids.

    Each source may be a :class:`SecurityFlags`, a mapping of flag names
    (``s2AccessControl``/``accessControl`` and friends, asserted by ``True``
    or ``"true"``), or an iterable of integer ids.
    """
    ids: set[int] = set()
    for source in sources:
        ids |= _ids_from_source(source)
    return tuple(sorted(ids))


def decode_security_classes(ids: Iterable[Any] | None) -> SecurityFlags:
    present = set()
    for value in ids or ():
        if isinstance(value, bool):
            continue
        try:
            present.add(int(value))
        except (TypeError, ValueError):
            continue
    return SecurityFlags(
        unauthenticated=SecurityClass.S2_UNAUTHENTICATED in present,
        authenticated=SecurityClass.S2_AUTHENTICATED in present,
        access_control=SecurityClass.S2_ACCESS_CONTROL in present,
        legacy_s0=SecurityClass.S0_LEGACY in present,
    )


def grant_security_classes(requested: Iterable[int], keys: Mapping[str, str]) -> list[int]:
    """Classes to grant during S2 bootstrap: requested ones with a configured key."""
    requested = list(requested or ())
    granted = []
    for value in requested:
        try:
            sc = SecurityClass(value)
        except ValueError:
            logger.info("Not granting unknown security class %s", value)
            continue
        key_name = KEY_NAMES[sc]
        if keys.get(key_name):
            granted.append(int(sc))
            logger.info("Granting %s (class %d), key available", key_name, sc)
        else:
            logger.info("Not granting %s (class %d), no key available", key_name, sc)

    if not granted:
        logger.warning(
            "No security classes granted. Requested: %s, available keys: %s",
            requested, sorted(keys),
        )
    return granted
