"""Shared pytest fixtures for Rendezvous tests."""
import os
import uuid

from cryptography.fernet import Fernet

# Settings are read once at import time; configure the test store first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TOKEN_SECRET_KEY", Fernet.generate_key().decode())
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DB_CREATE_TABLES", "true")
os.environ.setdefault("HEARTBEAT_INTERVAL_SECONDS", "3600")
os.environ.setdefault("GENERAL_RATE_LIMIT", "10000 per minute")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from app import database  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services.notifier_service import ConsoleNotifier  # noqa: E402
from app.services.presence_service import PresenceRegistry  # noqa: E402
from app.utils.clock import utcnow  # noqa: E402

TOKYO = (35.6762, 139.6503)
SHINJUKU = (35.6938, 139.7036)


class FakeHandle:
    """Connection handle that records every event pushed to it."""

    def __init__(self, user_id):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.events = []

    async def send(self, event, data):
        self.events.append((event, data))

    def named(self, event):
        return [data for name, data in self.events if name == event]


@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture
async def engine():
    eng = database.build_url_engine("sqlite+aiosqlite:///:memory:")
    await database.create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return database.make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def notifier():
    return ConsoleNotifier()


@pytest.fixture
def presence(session_factory):
    return PresenceRegistry(session_factory)


@pytest.fixture
def make_user(session):
    """Insert a verified user and commit it."""
    counter = {"n": 0}

    async def _make(
        name="Aiko",
        location=TOKYO,
        is_online=True,
        sms_verified=True,
        gender="female",
    ):
        counter["n"] += 1
        user = User(
            name=name,
            phone_number=f"+8190000{counter['n']:04d}",
            gender=gender,
            address="Tokyo",
            latitude=location[0],
            longitude=location[1],
            is_online=is_online,
            sms_verified=sms_verified,
            last_seen=utcnow(),
        )
        session.add(user)
        await session.commit()
        return user

    return _make
