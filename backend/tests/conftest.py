import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from claridad.config import Settings
from claridad.db import init_db, make_sessionmaker
from claridad.notifications import PushNotification
from claridad.reconcile import join_neighborhood
from claridad.services import Services


class FrozenClock:
    """Deterministic wall clock shared by every component under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, user_ids, notification: PushNotification) -> None:
        self.sent.append((list(user_ids), notification))


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient(tz_aware=True)["claridad_test"]


@pytest.fixture
async def sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'directory.db'}")
    await init_db(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def services(sessions, mongo_db, clock, dispatcher):
    return Services.build(sessions, mongo_db, Settings(), dispatcher=dispatcher, clock=clock)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def directory(services):
    return services.directory


@pytest.fixture
def make_member(services):
    async def _make(email, neighborhood="Bosque Peralta Ramos", name="Ana", **fields):
        user = await services.directory.create_user(email, name, **fields)
        if neighborhood:
            await join_neighborhood(services.directory, services.store, user.id, neighborhood)
        return await services.directory.get_user(user.id)
    return _make
