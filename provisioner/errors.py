"""Error taxonomy for relay operations.

Every error raised by a component derives from :class:`RelayError`; the
protocol router turns any of them into an ``ERROR`` response for the
originating client.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base error for relay failures."""


class ValidationError(RelayError):
    """Raised when a required field is missing or malformed."""


class StateError(RelayError):
    """Raised when an operation is attempted in a disallowed lifecycle state."""


class NotReadyError(StateError):
    """Raised when the driver (or a device) is not ready yet."""


class AlreadyStartedError(StateError):
    """Raised by ``start`` while a driver is starting or ready."""


class NotFoundError(RelayError):
    """Raised for an unknown DSK or device id."""


class UpstreamError(RelayError):
    """Raised when the driver or a device rejects or fails an operation."""


class ReadyTimeoutError(RelayError, TimeoutError):
    """Raised when waiting for driver readiness exceeds its bound."""
