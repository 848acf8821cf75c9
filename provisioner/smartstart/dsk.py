"""Device-Specific Key canonicalization.

A DSK reaches us as 40 decimal digits (the form printed on device labels,
8 groups of 5), as 32 hex characters (the 16 raw bytes), or occasionally as
40 hex characters read off a QR payload. All of them are reduced to
uppercase, dash-grouped blocks of five characters.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_SEPARATORS_RE = re.compile(r"[-\s]")
_DECIMAL_40_RE = re.compile(r"^[0-9]{40}$")
_HEX_32_RE = re.compile(r"^[0-9A-F]{32}$")
_HEX_40_RE = re.compile(r"^[0-9A-F]{40}$")


def _group(cleaned: str, size: int = 5) -> str:
    return "-".join(cleaned[i:i + size] for i in range(0, len(cleaned), size))


def normalize_dsk(value):
    """Return the canonical form of *value*.

    Never raises. Unrecognized input comes back cleaned (separators removed,
    uppercased) with a warning logged; non-string or empty input comes back
    untouched.
    """
    if not value or not isinstance(value, str):
        return value

    cleaned = _SEPARATORS_RE.sub("", value).upper()

    if _DECIMAL_40_RE.match(cleaned):
        return _group(cleaned)

    if _HEX_32_RE.match(cleaned):
        return _group(cleaned)

    if _HEX_40_RE.match(cleaned):
        logger.warning(
            "DSK has %d hex characters (expected 32), extracting a 32-character DSK",
            len(cleaned),
        )
        for candidate in (cleaned[:32], cleaned[-32:]):
            if _HEX_32_RE.match(candidate):
                return _group(candidate)

    logger.warning(
        "DSK length is %d, expected 40 decimal digits or 32 hex characters; "
        "DSK may not work correctly",
        len(cleaned),
    )
    return cleaned
