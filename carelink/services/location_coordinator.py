"""Location acquisition for open SOS alerts.

For every PENDING alert the coordinator keeps the record's position fresh
from the reporter's device:

    check permission ──denied──> request once ──still denied──> not_available
          │                                  └─denied forever──> not_available
       granted
          ├──> continuous stream (primary; re-opened on transient errors)
          └──> one-shot fix with a timeout (only shortens time to first fix)

Each stream fix re-reads the alert and stops tracking as soon as the alert
has left PENDING. A terminal status transition also stops tracking
explicitly through stop(). Location failures are logged and never leave
this module.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field

from carelink.core.config import settings
from carelink.core.sos_policies import AlertStatus
from carelink.services.alert_store import AlertStore
from carelink.services.geo_service import maps_link
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


@dataclass
class _Tracking:
    """Tasks and state for one alert."""

    provider: LocationProvider
    setup: asyncio.Task | None = None
    stream: asyncio.Task | None = None
    # Set once the stream hands over a fix; later one-shot results are stale
    has_fix: bool = False
    # Serializes position writes so a one-shot cannot land after a stream fix
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def tasks(self) -> list[asyncio.Task]:
        return [t for t in (self.setup, self.stream) if t is not None]


class LocationCoordinator:
    """Runs one independent acquisition per alert id."""

    def __init__(
        self,
        store: AlertStore,
        provider_for: Callable[[int], LocationProvider],
        fix_timeout: float | None = None,
        distance_filter: float | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._store = store
        self._provider_for = provider_for
        self._fix_timeout = fix_timeout if fix_timeout is not None else settings.location_fix_timeout_seconds
        self._distance_filter = (
            distance_filter if distance_filter is not None else settings.location_distance_filter_m
        )
        self._retry_delay = retry_delay if retry_delay is not None else settings.location_stream_retry_seconds
        # alert_id -> tracking state
        self._tracking: dict[str, _Tracking] = {}

    def start(self, alert_id: str, reporter_id: int) -> asyncio.Task:
        """Begin acquisition for an alert, replacing any earlier run for the same id."""
        self.stop(alert_id)
        tracking = _Tracking(provider=self._provider_for(reporter_id))
        self._tracking[alert_id] = tracking
        tracking.setup = asyncio.create_task(self._acquire(alert_id, tracking), name=f"sos-location-{alert_id}")
        logger.info("Location tracking started for SOS %s (reporter=%s)", alert_id, reporter_id)
        return tracking.setup

    def stop(self, alert_id: str) -> bool:
        """Cancel everything running for an alert. Returns False if nothing was."""
        tracking = self._tracking.pop(alert_id, None)
        if tracking is None:
            return False
        for task in tracking.tasks():
            task.cancel()
        logger.info("Location tracking stopped for SOS %s", alert_id)
        return True

    def is_tracking(self, alert_id: str) -> bool:
        tracking = self._tracking.get(alert_id)
        return tracking is not None and any(not t.done() for t in tracking.tasks())

    def stream_active(self, alert_id: str) -> bool:
        tracking = self._tracking.get(alert_id)
        return tracking is not None and tracking.stream is not None and not tracking.stream.done()

    async def wait(self, alert_id: str) -> None:
        """Wait until nothing is running for an alert any more."""
        while True:
            tracking = self._tracking.get(alert_id)
            if tracking is None:
                return
            running = [t for t in tracking.tasks() if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks: list[asyncio.Task] = []
        for alert_id in list(self._tracking):
            tracking = self._tracking.pop(alert_id)
            for task in tracking.tasks():
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---------- acquisition ----------

    async def _acquire(self, alert_id: str, tracking: _Tracking) -> None:
        try:
            await self._locate(alert_id, tracking)
        finally:
            self._forget(alert_id, tracking)

    async def _locate(self, alert_id: str, tracking: _Tracking) -> None:
        provider = tracking.provider
        try:
            permission = await provider.check_permission()
            if permission is LocationPermission.denied:
                permission = await provider.request_permission()
                if permission is LocationPermission.denied:
                    logger.warning("Location permission denied for SOS %s", alert_id)
                    await self._store.mark_location_unavailable(alert_id)
                    return

            if permission is LocationPermission.denied_forever:
                logger.warning("Location permission permanently denied for SOS %s", alert_id)
                await self._store.mark_location_unavailable(alert_id)
                return

            self._start_stream(alert_id, tracking)
        except Exception:
            logger.exception("Location setup error for SOS %s", alert_id)
            return

        try:
            position = await asyncio.wait_for(
                provider.get_current_position(LocationAccuracy.high),
                timeout=self._fix_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Immediate location fetch for SOS %s timed out after %ss, relying on stream",
                alert_id,
                self._fix_timeout,
            )
            return
        except Exception as exc:  # noqa: BLE001 - the stream stays the source of truth
            logger.warning("Immediate location fetch for SOS %s failed (%s), relying on stream", alert_id, exc)
            return

        async with tracking.write_lock:
            if tracking.has_fix:
                logger.debug("Stream already located SOS %s, dropping one-shot fix", alert_id)
                return
            await self._write_fix(alert_id, position)

    def _start_stream(self, alert_id: str, tracking: _Tracking) -> None:
        if tracking.stream is not None and not tracking.stream.done():
            tracking.stream.cancel()
        tracking.stream = asyncio.create_task(self._follow(alert_id, tracking), name=f"sos-stream-{alert_id}")

    async def _follow(self, alert_id: str, tracking: _Tracking) -> None:
        location_settings = LocationSettings(accuracy=LocationAccuracy.high, distance_filter=self._distance_filter)
        try:
            while True:
                try:
                    async with aclosing(tracking.provider.position_stream(location_settings)) as fixes:
                        async for position in fixes:
                            try:
                                alert = await self._store.get_alert(alert_id)
                                if alert is None or alert.status != AlertStatus.PENDING:
                                    logger.info("SOS %s is no longer pending, stopping location updates", alert_id)
                                    return
                                async with tracking.write_lock:
                                    tracking.has_fix = True
                                    await self._write_fix(alert_id, position)
                            except Exception:
                                # Skip this fix; the next one may get through
                                logger.exception("Could not record live location for SOS %s", alert_id)
                except LocationUnavailable as exc:
                    logger.warning("Live location for SOS %s unavailable (%s), retrying", alert_id, exc)
                    await asyncio.sleep(self._retry_delay)
                    continue
                # Provider closed the stream on its own
                return
        except LocationPermissionRevoked as exc:
            logger.warning("Live location for SOS %s ended: %s", alert_id, exc)
        except Exception:
            logger.exception("Live location error for SOS %s", alert_id)
        finally:
            self._forget(alert_id, tracking)

    async def _write_fix(self, alert_id: str, position: Position) -> bool:
        written = await self._store.record_position(
            alert_id,
            position.latitude,
            position.longitude,
            maps_link(position.latitude, position.longitude),
        )
        if not written:
            logger.info("SOS %s no longer accepts positions, fix dropped", alert_id)
        return written

    def _forget(self, alert_id: str, tracking: _Tracking) -> None:
        current = asyncio.current_task()
        if any(not t.done() and t is not current for t in tracking.tasks()):
            return
        # A newer run for the same alert may have replaced this one
        if self._tracking.get(alert_id) is tracking:
            del self._tracking[alert_id]
