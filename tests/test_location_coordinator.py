"""Location acquisition: permission outcomes, one-shot vs stream, stopping."""

import asyncio

import pytest

from carelink.core.sos_policies import AlertStatus, LocationStatus, TriggerRole
from carelink.services.location.provider import (
    LocationPermission,
    LocationPermissionRevoked,
    LocationUnavailable,
    Position,
)
from carelink.services.location_coordinator import LocationCoordinator


@pytest.fixture
def new_alert(store, make_user):
    counter = {"n": 0}

    async def _new():
        counter["n"] += 1
        user_id = make_user(f"user{counter['n']}@test.com", "Subject")
        alert = await store.create_alert(subject_id=user_id, reporter_id=user_id, triggered_by=TriggerRole.subject)
        return alert.id, user_id

    return _new


def _located(store, alert_id, position=None):
    async def check():
        alert = await store.get_alert(alert_id)
        if alert.location_status != LocationStatus.available:
            return False
        return position is None or alert.position == position

    return check


@pytest.mark.asyncio
async def test_one_shot_fix_fills_position(store, coordinator, fake_location, new_alert, eventually):
    """A quick first fix lands on the record with a map link."""
    fake_location.current = Position(latitude=12.9, longitude=77.6)
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(_located(store, alert_id))

    alert = await store.get_alert(alert_id)
    assert alert.position == (12.9, 77.6)
    assert "12.9,77.6" in alert.map_url
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_denied_twice_marks_not_available(store, coordinator, fake_location, new_alert):
    """Denied, asked once, still denied: no location and no stream."""
    fake_location.permission = LocationPermission.denied
    fake_location.permission_after_request = LocationPermission.denied
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await coordinator.wait(alert_id)

    alert = await store.get_alert(alert_id)
    assert alert.location_status == LocationStatus.not_available
    assert alert.position is None
    assert fake_location.permission_requests == 1
    assert fake_location.streams_opened == 0
    assert not coordinator.is_tracking(alert_id)


@pytest.mark.asyncio
async def test_denied_forever_never_asks(store, coordinator, fake_location, new_alert, monkeypatch):
    """Permanently denied: no prompt, no stream, one not_available write."""
    fake_location.permission = LocationPermission.denied_forever
    alert_id, user_id = await new_alert()

    marks = []
    original = store.mark_location_unavailable

    async def counting(aid):
        marks.append(aid)
        return await original(aid)

    monkeypatch.setattr(store, "mark_location_unavailable", counting)

    coordinator.start(alert_id, user_id)
    await coordinator.wait(alert_id)

    assert marks == [alert_id]
    assert fake_location.permission_requests == 0
    assert fake_location.streams_opened == 0
    alert = await store.get_alert(alert_id)
    assert alert.location_status == LocationStatus.not_available


@pytest.mark.asyncio
async def test_permission_granted_on_request_starts_stream(coordinator, fake_location, new_alert, eventually):
    fake_location.permission = LocationPermission.denied
    fake_location.permission_after_request = LocationPermission.granted
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)

    assert fake_location.permission_requests == 1
    assert coordinator.stream_active(alert_id)
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_stream_fix_when_one_shot_times_out(store, coordinator, fake_location, new_alert, eventually):
    """The one-shot never answers; the stream still locates the alert."""
    fake_location.current = None
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(Position(latitude=12.9, longitude=77.6))
    await eventually(_located(store, alert_id, (12.9, 77.6)))

    # One-shot gives up after its timeout; the stream keeps running
    await asyncio.sleep(0.3)
    assert coordinator.stream_active(alert_id)
    alert = await store.get_alert(alert_id)
    assert alert.location_status == LocationStatus.available
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_stream_updates_refresh_position(store, coordinator, fake_location, new_alert, eventually):
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(Position(latitude=12.9, longitude=77.6))
    await eventually(_located(store, alert_id, (12.9, 77.6)))
    fake_location.emit(Position(latitude=12.91, longitude=77.61))
    await eventually(_located(store, alert_id, (12.91, 77.61)))

    alert = await store.get_alert(alert_id)
    assert alert.map_url.endswith("12.91,77.61")
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_fix_after_alert_left_pending_is_dropped(store, coordinator, fake_location, new_alert, eventually):
    """A fix arriving after the alert was accepted is not written and stops the stream."""
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    await store.update_status(alert_id, AlertStatus.ACCEPTED, user_id)

    fake_location.emit(Position(latitude=12.9, longitude=77.6))
    await eventually(lambda: fake_location.open_streams == 0)
    await coordinator.wait(alert_id)

    alert = await store.get_alert(alert_id)
    assert alert.position is None
    assert alert.location_status == LocationStatus.pending
    assert not coordinator.is_tracking(alert_id)


@pytest.mark.asyncio
async def test_one_shot_failure_does_not_mark_unavailable(store, coordinator, fake_location, new_alert, eventually):
    fake_location.current = RuntimeError("gps off")
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    await asyncio.sleep(0.05)

    alert = await store.get_alert(alert_id)
    assert alert.location_status == LocationStatus.pending
    assert coordinator.stream_active(alert_id)

    fake_location.emit(Position(latitude=1.5, longitude=2.5))
    await eventually(_located(store, alert_id, (1.5, 2.5)))
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_transient_stream_error_reopens_stream(store, coordinator, fake_location, new_alert, eventually):
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(LocationUnavailable("signal lost"))
    await eventually(lambda: fake_location.streams_opened == 2 and fake_location.open_streams == 1)

    fake_location.emit(Position(latitude=3.0, longitude=4.0))
    await eventually(_located(store, alert_id, (3.0, 4.0)))
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_revoked_permission_ends_stream(store, coordinator, fake_location, new_alert, eventually):
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(LocationPermissionRevoked("user turned location off"))
    await eventually(lambda: not coordinator.stream_active(alert_id))

    assert fake_location.streams_opened == 1
    assert fake_location.open_streams == 0
    alert = await store.get_alert(alert_id)
    assert alert.location_status == LocationStatus.pending
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_stop_releases_stream(coordinator, fake_location, new_alert, eventually):
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)

    assert coordinator.stop(alert_id) is True
    await eventually(lambda: fake_location.open_streams == 0)
    assert not coordinator.is_tracking(alert_id)
    assert coordinator.stop(alert_id) is False


@pytest.mark.asyncio
async def test_restart_replaces_previous_run(coordinator, fake_location, new_alert, eventually):
    alert_id, user_id = await new_alert()

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.streams_opened == 2)
    await eventually(lambda: fake_location.open_streams == 1)

    assert coordinator.stream_active(alert_id)
    await coordinator.shutdown()
    await eventually(lambda: fake_location.open_streams == 0)


@pytest.mark.asyncio
async def test_alerts_are_tracked_independently(store, coordinator, fake_location, new_alert, eventually):
    first_id, first_user = await new_alert()
    second_id, second_user = await new_alert()

    coordinator.start(first_id, first_user)
    coordinator.start(second_id, second_user)
    await eventually(lambda: fake_location.open_streams == 2)

    fake_location.emit(Position(latitude=10.0, longitude=20.0))
    await eventually(_located(store, first_id, (10.0, 20.0)))
    await eventually(_located(store, second_id, (10.0, 20.0)))

    coordinator.stop(first_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(Position(latitude=11.0, longitude=21.0))
    await eventually(_located(store, second_id, (11.0, 21.0)))

    first = await store.get_alert(first_id)
    assert first.position == (10.0, 20.0)
    assert coordinator.stream_active(second_id)
    await coordinator.shutdown()


@pytest.fixture
def slow_fix_coordinator(store, fake_location):
    """One-shot timeout long enough for a held-back answer to still arrive."""
    return LocationCoordinator(
        store,
        lambda user_id: fake_location,
        fix_timeout=5.0,
        distance_filter=10.0,
        retry_delay=0.01,
    )


@pytest.mark.asyncio
async def test_store_error_on_one_fix_keeps_stream(store, coordinator, fake_location, new_alert, eventually, monkeypatch):
    """A failed read for one stream fix skips it; the next fix is still written."""
    alert_id, user_id = await new_alert()
    reads = {"count": 0}
    original = store.get_alert

    async def flaky(aid):
        reads["count"] += 1
        if reads["count"] == 1:
            raise RuntimeError("db blip")
        return await original(aid)

    monkeypatch.setattr(store, "get_alert", flaky)

    coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(Position(latitude=1.0, longitude=2.0))
    await eventually(lambda: reads["count"] >= 1)

    assert coordinator.stream_active(alert_id)
    fake_location.emit(Position(latitude=3.0, longitude=4.0))
    await eventually(_located(store, alert_id, (3.0, 4.0)))

    assert fake_location.streams_opened == 1
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_late_one_shot_does_not_replace_stream_fix(store, slow_fix_coordinator, fake_location, new_alert, eventually):
    fake_location.current = Position(latitude=50.0, longitude=50.0)
    fake_location.current_gate = asyncio.Event()
    alert_id, user_id = await new_alert()

    setup = slow_fix_coordinator.start(alert_id, user_id)
    await eventually(lambda: fake_location.open_streams == 1)
    fake_location.emit(Position(latitude=12.9, longitude=77.6))
    await eventually(_located(store, alert_id, (12.9, 77.6)))

    fake_location.current_gate.set()
    await asyncio.wait_for(setup, timeout=1)

    alert = await store.get_alert(alert_id)
    assert alert.position == (12.9, 77.6)
    assert alert.map_url.endswith("12.9,77.6")
    await slow_fix_coordinator.shutdown()


@pytest.mark.asyncio
async def test_one_shot_waits_for_stream_write_in_flight(
    store, slow_fix_coordinator, fake_location, new_alert, monkeypatch
):
    """A one-shot finishing while a stream fix is still being stored is dropped."""
    fake_location.current = Position(latitude=50.0, longitude=50.0)
    fake_location.current_gate = asyncio.Event()
    alert_id, user_id = await new_alert()
    committed = asyncio.Event()
    release = asyncio.Event()
    original = store.record_position

    async def slow_stream_write(aid, latitude, longitude, map_url):
        written = await original(aid, latitude, longitude, map_url)
        if (latitude, longitude) == (12.9, 77.6):
            committed.set()
            await release.wait()
        return written

    monkeypatch.setattr(store, "record_position", slow_stream_write)

    setup = slow_fix_coordinator.start(alert_id, user_id)
    while fake_location.open_streams == 0:
        await asyncio.sleep(0.01)
    fake_location.emit(Position(latitude=12.9, longitude=77.6))
    await asyncio.wait_for(committed.wait(), timeout=1)

    fake_location.current_gate.set()
    await asyncio.sleep(0.05)
    release.set()
    await asyncio.wait_for(setup, timeout=1)

    alert = await store.get_alert(alert_id)
    assert alert.position == (12.9, 77.6)
    await slow_fix_coordinator.shutdown()
