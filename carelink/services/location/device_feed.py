"""Location provider fed by the reporter's own device.

The phone reports its permission state and fixes through the HTTP API;
the server asks it for permission or fresh fixes over the user's
WebSocket connection. Each user gets one feed, shared by every alert that
user has raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from carelink.core.config import settings
from carelink.core.ws_manager import ConnectionManager, ws_manager
from carelink.services.geo_service import distance_m
from carelink.services.location.provider import (
    LocationAccuracy,
    LocationPermission,
    LocationPermissionRevoked,
    LocationProvider,
    LocationSettings,
    LocationUnavailable,
    Position,
)

logger = logging.getLogger(__name__)

_REVOKED = object()


class DeviceLocationFeed(LocationProvider):
    """Permission state and fixes as last reported by one user's device."""

    def __init__(
        self,
        user_id: int,
        connections: ConnectionManager = ws_manager,
        permission_timeout: float | None = None,
    ) -> None:
        self.user_id = user_id
        self._connections = connections
        self._permission_timeout = (
            permission_timeout
            if permission_timeout is not None
            else settings.location_permission_request_timeout_seconds
        )
        # Nothing reported yet is treated like a fresh install: not granted, but askable
        self._permission = LocationPermission.denied
        self._permission_reported = asyncio.Event()
        self._listeners: set[asyncio.Queue] = set()

    @property
    def permission(self) -> LocationPermission:
        return self._permission

    @property
    def readers(self) -> int:
        """Open one-shot fetches and streams waiting on this device."""
        return len(self._listeners)

    def report_permission(self, permission: LocationPermission) -> None:
        previous = self._permission
        self._permission = permission
        reported, self._permission_reported = self._permission_reported, asyncio.Event()
        reported.set()
        if previous is LocationPermission.granted and permission is not LocationPermission.granted:
            logger.warning("Location permission withdrawn by user=%s", self.user_id)
            self._broadcast(_REVOKED)

    def report_position(self, position: Position) -> int:
        """Hand a fix to every open reader. Returns the number of readers."""
        return self._broadcast(position)

    async def check_permission(self) -> LocationPermission:
        return self._permission

    async def request_permission(self) -> LocationPermission:
        if self._permission is LocationPermission.denied_forever:
            return self._permission
        reported = self._permission_reported
        sent = await self._connections.send_to_user(self.user_id, "location.permission_requested", {})
        if not sent:
            logger.info("No device connected for user=%s, permission stays %s", self.user_id, self._permission.value)
            return self._permission
        try:
            await asyncio.wait_for(reported.wait(), timeout=self._permission_timeout)
        except asyncio.TimeoutError:
            logger.warning("Device for user=%s did not answer the permission request", self.user_id)
        return self._permission

    async def get_current_position(self, accuracy: LocationAccuracy = LocationAccuracy.high) -> Position:
        if self._permission is not LocationPermission.granted:
            raise LocationUnavailable(f"Location permission is {self._permission.value}")
        queue = self._subscribe()
        try:
            await self._connections.send_to_user(self.user_id, "location.fix_requested", {"accuracy": accuracy.value})
            item = await queue.get()
            if item is _REVOKED:
                raise LocationPermissionRevoked(f"Permission withdrawn by user {self.user_id}")
            return item
        finally:
            self._listeners.discard(queue)

    async def position_stream(self, location_settings: LocationSettings) -> AsyncIterator[Position]:
        if self._permission is not LocationPermission.granted:
            raise LocationPermissionRevoked(f"Location permission is {self._permission.value}")
        queue = self._subscribe()
        last: Position | None = None
        try:
            await self._connections.send_to_user(
                self.user_id,
                "location.stream_requested",
                {"accuracy": location_settings.accuracy.value, "distance_filter": location_settings.distance_filter},
            )
            while True:
                item = await queue.get()
                if item is _REVOKED:
                    raise LocationPermissionRevoked(f"Permission withdrawn by user {self.user_id}")
                if last is not None and location_settings.distance_filter > 0:
                    moved = distance_m(last.latitude, last.longitude, item.latitude, item.longitude)
                    if moved < location_settings.distance_filter:
                        continue
                last = item
                yield item
        finally:
            self._listeners.discard(queue)

    def _subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.add(queue)
        return queue

    def _broadcast(self, item: object) -> int:
        for queue in list(self._listeners):
            queue.put_nowait(item)
        return len(self._listeners)


class DeviceFeedRegistry:
    """One DeviceLocationFeed per user, created on first use."""

    def __init__(self, connections: ConnectionManager = ws_manager) -> None:
        self._connections = connections
        self._feeds: dict[int, DeviceLocationFeed] = {}

    def for_user(self, user_id: int) -> DeviceLocationFeed:
        feed = self._feeds.get(user_id)
        if feed is None:
            feed = DeviceLocationFeed(user_id, connections=self._connections)
            self._feeds[user_id] = feed
        return feed


device_feeds = DeviceFeedRegistry()
