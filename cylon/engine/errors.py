"""Engine error taxonomy.

All errors raised by the engine derive from `CylonError` so the HTTP layer can
map them to transport status codes without knowing engine internals.
"""

from __future__ import annotations


class CylonError(Exception):
    """Base class for engine errors."""

    #: Short machine-readable type reported to callers.
    error_type: str = "server_error"


class InitializationError(CylonError):
    """Backend or model could not be brought up; the process must not serve."""

    error_type = "initialization_error"


class BackendError(CylonError):
    """A forward step failed on the device.

    `corrupted` is set when the failure may have left shared device state
    unusable; the owning context is reinitialized before its next step.
    """

    error_type = "backend_error"

    def __init__(self, message: str, *, corrupted: bool = False) -> None:
        super().__init__(message)
        self.corrupted = bool(corrupted)


class Overloaded(CylonError):
    """Admission rejected (queue full or queue wait exceeded). Retry later."""

    error_type = "overloaded"


class InvalidRequest(CylonError, ValueError):
    """Malformed request, rejected before any session is created."""

    error_type = "invalid_request_error"
