"""Caregiver fan-out."""

import pytest

from carelink.core.sos_policies import NOTIFICATION_PRIORITY, NOTIFICATION_TITLE, NOTIFICATION_TYPE, TriggerRole
from carelink.services.notification_service import NotificationService, sos_message


async def _alert_for(store, subject_id):
    alert = await store.create_alert(subject_id=subject_id, reporter_id=subject_id, triggered_by=TriggerRole.subject)
    return alert.id


@pytest.mark.asyncio
async def test_one_notification_per_linked_caregiver(store, make_user, link):
    subject = make_user("elder@test.com", "Asha")
    caregivers = [make_user(f"cg{i}@test.com", f"CG{i}", "caregiver") for i in range(3)]
    make_user("other@test.com", "Other", "caregiver")
    for cg in caregivers:
        link(cg, subject)
    alert_id = await _alert_for(store, subject)

    written = await NotificationService(store).notify_caregivers(alert_id, subject)

    assert written == 3
    rows = await store.list_notifications(sos_id=alert_id)
    assert sorted(r.user_id for r in rows) == sorted(caregivers)
    for row in rows:
        assert row.target_user_id == subject
        assert row.title == NOTIFICATION_TITLE
        assert row.message == sos_message("Asha")
        assert row.type == NOTIFICATION_TYPE
        assert row.priority == NOTIFICATION_PRIORITY
        assert row.is_read is False
        assert row.status == "pending"


@pytest.mark.asyncio
async def test_no_caregivers_writes_nothing(store, make_user):
    subject = make_user("alone@test.com", "Alone")
    alert_id = await _alert_for(store, subject)

    assert await NotificationService(store).notify_caregivers(alert_id, subject) == 0
    assert await store.list_notifications(sos_id=alert_id) == []


@pytest.mark.asyncio
async def test_missing_name_uses_fallback(store, make_user, link):
    subject = make_user("noname@test.com", "")
    cg = make_user("cg@test.com", "CG", "caregiver")
    link(cg, subject)
    alert_id = await _alert_for(store, subject)

    await NotificationService(store).notify_caregivers(alert_id, subject)

    rows = await store.list_notifications(user_id=cg)
    assert rows[0].message == "Elderly has triggered an emergency SOS. Tap to open immediately."


@pytest.mark.asyncio
async def test_store_failure_is_swallowed(store, make_user, monkeypatch):
    subject = make_user("elder@test.com", "Elder")
    alert_id = await _alert_for(store, subject)

    async def broken(subject_id):
        raise RuntimeError("database down")

    monkeypatch.setattr(store, "find_caregivers", broken)

    assert await NotificationService(store).notify_caregivers(alert_id, subject) == 0


@pytest.mark.asyncio
async def test_batch_is_all_or_nothing(store, make_user, link):
    """A second run for the same alert collides on one row and writes none."""
    subject = make_user("elder@test.com", "Elder")
    caregivers = [make_user(f"cg{i}@test.com", f"CG{i}", "caregiver") for i in range(3)]
    for cg in caregivers:
        link(cg, subject)
    alert_id = await _alert_for(store, subject)
    service = NotificationService(store)

    assert await service.notify_caregivers(alert_id, subject) == 3
    assert await service.notify_caregivers(alert_id, subject) == 0

    assert len(await store.list_notifications(sos_id=alert_id)) == 3
