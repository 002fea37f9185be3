"""Pytest fixtures."""

from __future__ import annotations

import asyncio
import inspect

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from carelink.core.deps import get_device_feeds, get_sos_service
from carelink.core.security import create_access_token
from carelink.core.ws_manager import ConnectionManager
from carelink.db.base import Base
from carelink.db.session import get_db
from carelink.main import app
from carelink.models import CareLink, Notification, SosAlert, User  # noqa: F401 - register for create_all
from carelink.services.alert_store import AlertStore
from carelink.services.location.device_feed import DeviceFeedRegistry
from carelink.services.location.provider import (
    LocationAccuracy,
    LocationPermission,
    LocationProvider,
    LocationSettings,
    Position,
)
from carelink.services.location_coordinator import LocationCoordinator
from carelink.services.notification_service import NotificationService
from carelink.services.sos_service import SosService


class FakeLocationProvider(LocationProvider):
    """Scriptable provider.

    current: what the one-shot fetch returns (a Position), raises (an
    exception) or None to never answer. current_gate holds the one-shot
    answer back until it is set. emit() pushes a fix or an exception into
    every open stream.
    """

    def __init__(self) -> None:
        self.permission = LocationPermission.granted
        self.permission_after_request = LocationPermission.denied
        self.current: Position | Exception | None = None
        self.gate: asyncio.Event | None = None
        self.current_gate: asyncio.Event | None = None
        self.permission_requests = 0
        self.streams_opened = 0
        self._streams: list[asyncio.Queue] = []

    @property
    def open_streams(self) -> int:
        return len(self._streams)

    async def check_permission(self) -> LocationPermission:
        if self.gate is not None:
            await self.gate.wait()
        return self.permission

    async def request_permission(self) -> LocationPermission:
        self.permission_requests += 1
        self.permission = self.permission_after_request
        return self.permission

    async def get_current_position(self, accuracy: LocationAccuracy = LocationAccuracy.high) -> Position:
        if self.current_gate is not None:
            await self.current_gate.wait()
        if self.current is None:
            await asyncio.Event().wait()
        if isinstance(self.current, Exception):
            raise self.current
        return self.current

    async def position_stream(self, location_settings: LocationSettings):
        queue: asyncio.Queue = asyncio.Queue()
        self.streams_opened += 1
        self._streams.append(queue)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._streams.remove(queue)

    def emit(self, item: Position | Exception) -> None:
        for queue in list(self._streams):
            queue.put_nowait(item)


async def _eventually(check, timeout: float = 2.0, interval: float = 0.01):
    """Poll check() (sync or async) until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = check()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def engine(tmp_path):
    """Fresh sqlite file per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory):
    return AlertStore(session_factory)


@pytest.fixture
def make_user(session_factory):
    def _make(email: str, full_name: str = "", role: str = "elderly", is_active: bool = True) -> int:
        with session_factory() as db:
            user = User(email=email, full_name=full_name, role=role, is_active=is_active)
            db.add(user)
            db.commit()
            db.refresh(user)
            return user.id

    return _make


@pytest.fixture
def link(session_factory):
    def _link(caregiver_id: int, subject_id: int) -> None:
        with session_factory() as db:
            db.add(CareLink(caregiver_id=caregiver_id, subject_id=subject_id))
            db.commit()

    return _link


@pytest.fixture
def fake_location():
    return FakeLocationProvider()


@pytest.fixture
def coordinator(store, fake_location):
    return LocationCoordinator(
        store,
        lambda user_id: fake_location,
        fix_timeout=0.2,
        distance_filter=10.0,
        retry_delay=0.01,
    )


@pytest.fixture
def service(store, coordinator):
    return SosService(store=store, coordinator=coordinator, notifications=NotificationService(store))


@pytest.fixture
def device_feeds():
    return DeviceFeedRegistry(connections=ConnectionManager())


@pytest.fixture
def client(session_factory, service, device_feeds):
    """Test client wired to the per-test database and fake location provider."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sos_service] = lambda: service
    app.dependency_overrides[get_device_feeds] = lambda: device_feeds
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header(make_user):
    """Create a user and return (user_id, Authorization header)."""

    def _auth(email: str, full_name: str = "", role: str = "elderly") -> tuple[int, dict[str, str]]:
        user_id = make_user(email, full_name, role)
        token = create_access_token(subject=email)
        return user_id, {"Authorization": f"Bearer {token}"}

    return _auth
