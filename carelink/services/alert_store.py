"""SOS record store.

Async facade over the SQLAlchemy models. Every call runs its session work
in the threadpool and returns detached pydantic snapshots, never ORM rows.
Writes that must respect the alert lifecycle are single conditional
UPDATEs, so the check and the write cannot be split by a concurrent
status change.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from carelink.core.sos_policies import AlertStatus, LocationStatus, TriggerRole, UserRole
from carelink.models.notification import Notification
from carelink.models.sos_alert import SosAlert
from carelink.models.user import CareLink, User
from carelink.schemas.sos import NotificationRead, SosAlertRead
from carelink.services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)

ALERTS = "sos_alerts"
NOTIFICATIONS = "notifications"


class AlertStore:
    def __init__(self, session_factory: sessionmaker, feed: ChangeFeed | None = None) -> None:
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()

    # ---------- alerts ----------

    async def create_alert(self, subject_id: int, reporter_id: int, triggered_by: TriggerRole) -> SosAlertRead:
        """Insert a PENDING alert with no location yet. Returns once committed."""
        alert = await run_in_threadpool(self._create_alert, subject_id, reporter_id, triggered_by)
        self.feed.publish(ALERTS)
        return alert

    async def get_alert(self, alert_id: str) -> SosAlertRead | None:
        return await run_in_threadpool(self._get_alert, alert_id)

    async def update_status(self, alert_id: str, status: AlertStatus, responder_id: int) -> SosAlertRead | None:
        """Last-write-wins status change. Returns None if the alert does not exist."""
        alert = await run_in_threadpool(self._update_status, alert_id, status, responder_id)
        if alert is not None:
            self.feed.publish(ALERTS)
        return alert

    async def record_position(self, alert_id: str, latitude: float, longitude: float, map_url: str) -> bool:
        """Write a fix and mark location available, only while the alert is PENDING."""
        written = await run_in_threadpool(self._record_position, alert_id, latitude, longitude, map_url)
        if written:
            self.feed.publish(ALERTS)
        return written

    async def mark_location_unavailable(self, alert_id: str) -> bool:
        """pending -> not_available. No-op once a location status has been decided."""
        written = await run_in_threadpool(self._mark_location_unavailable, alert_id)
        if written:
            self.feed.publish(ALERTS)
        return written

    async def list_alerts(
        self,
        status_in: Sequence[AlertStatus] | None = None,
        subject_in: Sequence[int] | None = None,
        subject_id: int | None = None,
    ) -> list[SosAlertRead]:
        if subject_in is not None and not subject_in:
            return []
        return await run_in_threadpool(self._list_alerts, status_in, subject_in, subject_id)

    async def watch_alerts(
        self,
        status_in: Sequence[AlertStatus] | None = None,
        subject_in: Sequence[int] | None = None,
        subject_id: int | None = None,
    ) -> AsyncIterator[list[SosAlertRead]]:
        """Live query: yields the current matches, then again after every alert change.

        An empty subject_in can never match, so the subscription ends at once
        without yielding.
        """
        if subject_in is not None and not subject_in:
            return
        queue = self.feed.subscribe(ALERTS)
        try:
            while True:
                yield await self.list_alerts(status_in=status_in, subject_in=subject_in, subject_id=subject_id)
                await queue.get()
                # Collapse bursts of writes into one re-query
                while not queue.empty():
                    queue.get_nowait()
        finally:
            self.feed.unsubscribe(ALERTS, queue)

    # ---------- subscribers ----------

    async def find_caregivers(self, subject_id: int) -> list[int]:
        """Ids of caregivers linked to the subject."""
        return await run_in_threadpool(self._find_caregivers, subject_id)

    async def get_display_name(self, user_id: int) -> str | None:
        return await run_in_threadpool(self._get_display_name, user_id)

    async def add_notifications(self, records: Iterable[dict[str, Any]]) -> int:
        """Insert all notifications in one transaction: either every row lands or none does."""
        rows = list(records)
        if not rows:
            return 0
        count = await run_in_threadpool(self._add_notifications, rows)
        self.feed.publish(NOTIFICATIONS)
        return count

    async def list_notifications(self, user_id: int | None = None, sos_id: str | None = None) -> list[NotificationRead]:
        return await run_in_threadpool(self._list_notifications, user_id, sos_id)

    # ---------- session work (threadpool) ----------

    def _create_alert(self, subject_id: int, reporter_id: int, triggered_by: TriggerRole) -> SosAlertRead:
        with self._session_factory() as db:
            alert = SosAlert(
                id=uuid.uuid4().hex,
                subject_id=subject_id,
                reporter_id=reporter_id,
                triggered_by=TriggerRole(triggered_by).value,
                status=AlertStatus.PENDING.value,
                location_status=LocationStatus.pending.value,
                latitude=None,
                longitude=None,
                map_url=None,
            )
            db.add(alert)
            db.commit()
            db.refresh(alert)
            return SosAlertRead.model_validate(alert)

    def _get_alert(self, alert_id: str) -> SosAlertRead | None:
        with self._session_factory() as db:
            alert = db.get(SosAlert, alert_id)
            return SosAlertRead.model_validate(alert) if alert else None

    def _update_status(self, alert_id: str, status: AlertStatus, responder_id: int) -> SosAlertRead | None:
        with self._session_factory() as db:
            result = db.execute(
                update(SosAlert)
                .where(SosAlert.id == alert_id)
                .values(
                    status=AlertStatus(status).value,
                    responded_by=responder_id,
                    response_timestamp=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 0:
                return None
            alert = db.get(SosAlert, alert_id)
            return SosAlertRead.model_validate(alert) if alert else None

    def _record_position(self, alert_id: str, latitude: float, longitude: float, map_url: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(
                update(SosAlert)
                .where(
                    SosAlert.id == alert_id,
                    SosAlert.status == AlertStatus.PENDING.value,
                    SosAlert.location_status != LocationStatus.not_available.value,
                )
                .values(
                    latitude=latitude,
                    longitude=longitude,
                    map_url=map_url,
                    location_status=LocationStatus.available.value,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0

    def _mark_location_unavailable(self, alert_id: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(
                update(SosAlert)
                .where(
                    SosAlert.id == alert_id,
                    SosAlert.location_status == LocationStatus.pending.value,
                )
                .values(location_status=LocationStatus.not_available.value)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0

    def _list_alerts(
        self,
        status_in: Sequence[AlertStatus] | None,
        subject_in: Sequence[int] | None,
        subject_id: int | None,
    ) -> list[SosAlertRead]:
        stmt = select(SosAlert)
        if status_in is not None:
            stmt = stmt.where(SosAlert.status.in_([AlertStatus(s).value for s in status_in]))
        if subject_in is not None:
            stmt = stmt.where(SosAlert.subject_id.in_(list(subject_in)))
        if subject_id is not None:
            stmt = stmt.where(SosAlert.subject_id == subject_id)
        stmt = stmt.order_by(SosAlert.created_at.desc())
        with self._session_factory() as db:
            return [SosAlertRead.model_validate(a) for a in db.execute(stmt).scalars().all()]

    def _find_caregivers(self, subject_id: int) -> list[int]:
        with self._session_factory() as db:
            result = db.execute(
                select(User.id)
                .join(CareLink, CareLink.caregiver_id == User.id)
                .where(
                    CareLink.subject_id == subject_id,
                    User.role == UserRole.caregiver.value,
                    User.is_active.is_(True),
                )
                .order_by(User.id)
            )
            return list(result.scalars().all())

    def _get_display_name(self, user_id: int) -> str | None:
        with self._session_factory() as db:
            user = db.get(User, user_id)
            return user.full_name if user else None

    def _add_notifications(self, rows: list[dict[str, Any]]) -> int:
        with self._session_factory() as db:
            db.add_all([Notification(**row) for row in rows])
            db.commit()
            return len(rows)

    def _list_notifications(self, user_id: int | None, sos_id: str | None) -> list[NotificationRead]:
        stmt = select(Notification)
        if user_id is not None:
            stmt = stmt.where(Notification.user_id == user_id)
        if sos_id is not None:
            stmt = stmt.where(Notification.sos_id == sos_id)
        stmt = stmt.order_by(Notification.id)
        with self._session_factory() as db:
            return [NotificationRead.model_validate(n) for n in db.execute(stmt).scalars().all()]

