"""Error taxonomy for the unlock engine.

Geometry and color problems are recovered where they happen and only
logged. Network and permission problems become typed outcomes and
UnlockFailure events; they are never raised into the location callback.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(Enum):
    MALFORMED_GEOMETRY = "malformed_geometry"
    LOCATION_PERMISSION_DENIED = "location_permission_denied"
    NETWORK_TRANSIENT = "network_transient"
    ALREADY_OWNED_BY_OTHER = "already_owned_by_other"
    SERVER_REJECTED = "server_rejected"
    MISSING_REGION = "missing_region"

    @property
    def retryable(self) -> bool:
        return self is FailureReason.NETWORK_TRANSIENT


class EngineError(Exception):
    """Base class for unlock engine errors."""


class BackendError(EngineError):
    """The backend answered with something the engine cannot use."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NetworkTransientError(BackendError):
    """Connection failure, timeout or 5xx. Worth one retry."""


class LocationPermissionDenied(EngineError):
    """The location source refused access."""


class PoiPlacementError(EngineError):
    """A point of interest cannot be placed at the requested location."""

    def __init__(self, message: str, district_name: str | None = None):
        super().__init__(message)
        self.district_name = district_name
