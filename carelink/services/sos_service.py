"""SOS alert lifecycle.

Creating an alert commits the record first, then kicks off caregiver
fan-out and location acquisition as background tasks without waiting for
either. Status changes are applied as given (last write wins, no
transition table) and stop location tracking when they end it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from carelink.core.sos_policies import CLOSED_STATUSES, STOP_TRACKING_STATUSES, AlertStatus, TriggerRole
from carelink.schemas.sos import SosAlertRead
from carelink.services.alert_store import AlertStore
from carelink.services.location_coordinator import LocationCoordinator
from carelink.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class NotAuthenticated(Exception):
    """Raised when an SOS is triggered without a caller identity."""


class AlertNotFound(Exception):
    """Raised when a status change targets an unknown alert."""


class SosService:
    def __init__(
        self,
        store: AlertStore,
        coordinator: LocationCoordinator,
        notifications: NotificationService,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.notifications = notifications
        # Strong references so running background tasks are not garbage collected
        self._background: set[asyncio.Task] = set()

    async def create_alert(
        self,
        reporter_id: int | None,
        triggered_by: TriggerRole = TriggerRole.subject,
        subject_id: int | None = None,
    ) -> str:
        """Create a PENDING alert and return its id as soon as it is stored.

        subject_id defaults to the reporter (someone raising an SOS for themselves).
        """
        if reporter_id is None:
            raise NotAuthenticated("User not logged in")
        target_id = subject_id if subject_id is not None else reporter_id

        alert = await self.store.create_alert(
            subject_id=target_id,
            reporter_id=reporter_id,
            triggered_by=triggered_by,
        )
        logger.info(
            "SOS %s created for user=%s by user=%s (%s)",
            alert.id,
            target_id,
            reporter_id,
            TriggerRole(triggered_by).value,
        )

        self._spawn(self.notifications.notify_caregivers(alert.id, target_id), name=f"sos-notify-{alert.id}")
        self.coordinator.start(alert.id, reporter_id)
        return alert.id

    async def transition_status(self, alert_id: str, new_status: AlertStatus, responder_id: int) -> SosAlertRead:
        """Apply a responder's status change unconditionally."""
        new_status = AlertStatus(new_status)
        alert = await self.store.update_status(alert_id, new_status, responder_id)
        if alert is None:
            raise AlertNotFound(f"SOS {alert_id} not found")
        logger.info("SOS %s -> %s by user=%s", alert_id, new_status.value, responder_id)

        if new_status in STOP_TRACKING_STATUSES:
            self.coordinator.stop(alert_id)
        if new_status in CLOSED_STATUSES:
            logger.info("SOS %s closed", alert_id)
        return alert

    async def shutdown(self) -> None:
        await self.coordinator.shutdown()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for outstanding fan-out tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
