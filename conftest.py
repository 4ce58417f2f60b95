import os

os.environ.setdefault("TESTING", "true")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["MESSAGE_RATE_LIMIT_PER_MINUTE"] = "0"
os.environ["LOGIN_RATE_LIMIT_PER_MINUTE"] = "0"
os.environ.setdefault("AUTH_COOKIE_SECURE", "false")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")

import asyncio
import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import hash_password
from core.db import Base
from core.ports.blob_store import BlobStoreError
from core.presence import PresenceDirectory
from core.sequences import USERS, seed_counters
from models import IdCounter, User
from utils.storage import decode_image_payload

TEST_PASSWORD = "password123"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)

# A 1x1 transparent PNG
PNG_DATA_URI = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


@pytest.fixture(scope="session")
def test_engine():
    """SQLite in memory, one connection shared by every thread of a test"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import models  # noqa: F401  registers mappers on Base

    return engine


@pytest.fixture(scope="function")
def test_db(test_engine):
    """Create all tables before each test and drop them after"""
    Base.metadata.create_all(bind=test_engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    db = TestingSessionLocal()

    try:
        seed_counters(db)
        base_time = datetime.utcnow() - timedelta(days=30)
        db.add_all(
            [
                User(
                    user_id=index,
                    name=name,
                    email=f"{name.lower()}@example.com",
                    password=_PASSWORD_HASH,
                    last_seen=base_time,
                    created_at=base_time + timedelta(minutes=index),
                )
                for index, name in enumerate(("Alice", "Bob", "Carol", "Dave"), start=1)
            ]
        )
        db.query(IdCounter).filter(IdCounter.name == USERS).update({"value": 4})
        db.commit()

        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def users(test_db):
    """The four seeded users, ordered by ID (Alice, Bob, Carol, Dave)."""
    return test_db.query(User).order_by(User.user_id).all()


@pytest.fixture
def presence():
    return PresenceDirectory()


class RecordingConnection:
    """Stands in for a live socket and keeps every frame it was sent."""

    def __init__(self, name: str = "conn"):
        self.name = name
        self.frames = []

    async def send_json(self, frame):
        self.frames.append(frame)

    def events(self, name=None):
        return [f for f in self.frames if name is None or f["event"] == name]

    def __repr__(self):
        return f"RecordingConnection({self.name!r})"


class FailingConnection:
    def __init__(self):
        self.attempts = 0

    async def send_json(self, frame):
        self.attempts += 1
        raise RuntimeError("socket closed")


class FakeBlobStore:
    def __init__(self):
        self.uploads = []
        self.fail = False

    def upload(self, raw_payload: str, folder: str) -> str:
        decode_image_payload(raw_payload)
        if self.fail:
            raise BlobStoreError("media store unavailable")
        self.uploads.append(folder)
        return f"https://media.test/{folder}/{len(self.uploads)}.png"


@pytest.fixture
def blob_store():
    return FakeBlobStore()


def run(coro):
    return asyncio.run(coro)


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until ``predicate()`` is truthy; for frames pushed from the app thread."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())
