"""Location provider contract.

A provider answers three questions for one device: may we read its
location, where is it right now, and where does it go from here. The
coordinator only talks to this interface; where the fixes actually come
from is up to the implementation.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone


class LocationPermission(str, enum.Enum):
    granted = "granted"
    denied = "denied"
    denied_forever = "denied_forever"


class LocationAccuracy(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    best = "best"


class LocationError(Exception):
    """Base class for provider failures."""


class LocationUnavailable(LocationError):
    """No fix could be produced right now; trying again later may work."""


class LocationPermissionRevoked(LocationError):
    """The device withdrew location permission while a stream was open."""


@dataclass(frozen=True)
class Position:
    """One reported fix."""

    latitude: float
    longitude: float
    accuracy: float | None = None  # meters
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class LocationSettings:
    accuracy: LocationAccuracy = LocationAccuracy.high
    distance_filter: float = 0.0  # minimum meters between reported fixes


class LocationProvider(ABC):
    @abstractmethod
    async def check_permission(self) -> LocationPermission:
        """Current permission state, without prompting."""

    @abstractmethod
    async def request_permission(self) -> LocationPermission:
        """Ask for permission once and return the resulting state."""

    @abstractmethod
    async def get_current_position(self, accuracy: LocationAccuracy = LocationAccuracy.high) -> Position:
        """Single fix. Callers bound this with their own timeout."""

    @abstractmethod
    def position_stream(self, location_settings: LocationSettings) -> AsyncIterator[Position]:
        """Continuous fixes until the iterator is closed.

        Raises LocationPermissionRevoked or LocationUnavailable from the
        iterator when the underlying feed fails.
        """
