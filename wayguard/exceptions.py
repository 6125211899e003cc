"""Exception hierarchy for WayGuard."""

from __future__ import annotations


class WayGuardError(Exception):
    """Base exception for all WayGuard errors."""


class PermissionDeniedError(WayGuardError):
    """Position or microphone access was refused.

    Fatal to the dependent subsystem only.  Never retried automatically.
    """

    def __init__(self, message: str, *, resource: str = "") -> None:
        self.resource = resource
        super().__init__(message)


class NetworkFailureError(WayGuardError):
    """A network-bound call (geocoding, upload, delivery) failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class UploadError(NetworkFailureError):
    """Blob storage rejected or failed to accept a recording."""


class GeocodingError(NetworkFailureError):
    """An address could not be resolved to a coordinate."""


class RecordingFailureError(WayGuardError):
    """The audio recorder could not start, stop, or produce a clip."""


class InvalidTransitionError(WayGuardError):
    """Raised when a state transition is not permitted."""
