"""Location provider interface and the device-backed implementation."""

from carelink.services.location.provider import (
    LocationAccuracy,
    LocationError,
    LocationPermission,
    LocationPermissionRevoked,
    LocationProvider,
    LocationSettings,
    LocationUnavailable,
    Position,
)

__all__ = [
    "LocationAccuracy",
    "LocationError",
    "LocationPermission",
    "LocationPermissionRevoked",
    "LocationProvider",
    "LocationSettings",
    "LocationUnavailable",
    "Position",
]
