"""Caregiver fan-out for new SOS alerts."""

from __future__ import annotations

import logging

from carelink.core.config import settings
from carelink.core.sos_policies import NOTIFICATION_PRIORITY, NOTIFICATION_TITLE, NOTIFICATION_TYPE
from carelink.services.alert_store import AlertStore

logger = logging.getLogger(__name__)


def sos_message(display_name: str) -> str:
    return f"{display_name} has triggered an emergency SOS. Tap to open immediately."


class NotificationService:
    """Writes one notification per caregiver linked to the person in danger."""

    def __init__(self, store: AlertStore, fallback_name: str | None = None) -> None:
        self._store = store
        self._fallback_name = fallback_name or settings.sos_fallback_display_name

    async def notify_caregivers(self, alert_id: str, subject_id: int) -> int:
        """Best effort: returns how many notifications were written, 0 on any failure.

        Never raises; the alert already exists whatever happens here.
        """
        try:
            caregiver_ids = await self._store.find_caregivers(subject_id)
            display_name = await self._store.get_display_name(subject_id) or self._fallback_name
            records = [
                {
                    "user_id": caregiver_id,
                    "sos_id": alert_id,
                    "target_user_id": subject_id,
                    "title": NOTIFICATION_TITLE,
                    "message": sos_message(display_name),
                    "type": NOTIFICATION_TYPE,
                    "priority": NOTIFICATION_PRIORITY,
                    "is_read": False,
                    "status": "pending",
                }
                for caregiver_id in caregiver_ids
            ]
            if not records:
                logger.info("No caregivers linked to user=%s, SOS %s notifies nobody", subject_id, alert_id)
                return 0
            written = await self._store.add_notifications(records)
            logger.info("SOS %s: notified %s caregivers", alert_id, written)
            return written
        except Exception:
            logger.exception("Error sending SOS notifications for %s", alert_id)
            return 0
