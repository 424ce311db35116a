"""Shared test fixtures for QuizSync tests."""

import pytest
import tempfile
from pathlib import Path

from core.local_cache import LocalCacheStore
from core.memory_store import MemoryBackend, MemoryRecordStore
from core.session import SessionContext
from utils.config import AppSettings

APP_ID = "medquiz_v2"
USER_ID = "123456789"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = 1_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def temp_db_path():
    """Create a temporary database path and clean up afterwards."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield db_path


@pytest.fixture
def server_clock():
    return FakeClock(10_000_000)


@pytest.fixture
def device_clock():
    return FakeClock(1_000_000)


@pytest.fixture
def backend(server_clock):
    """Shared remote document tree."""
    return MemoryBackend(clock=server_clock)


@pytest.fixture
def store(backend):
    """Client connection of the device under test."""
    return MemoryRecordStore(backend)


@pytest.fixture
def other_store(backend):
    """Client connection of a second device of the same user."""
    return MemoryRecordStore(backend)


@pytest.fixture
def settings():
    return AppSettings(app_id=APP_ID, admin_ids="42", allowed_user_ids=USER_ID)


@pytest.fixture
def ctx(settings):
    return SessionContext(
        app_id=APP_ID,
        user_id=USER_ID,
        device_session_id="device-session-aaaaaaaaaaaa",
        user_name="Alice",
        settings=settings,
    )


@pytest.fixture
def anonymous_ctx(settings):
    return SessionContext(app_id=APP_ID, user_id=None, settings=settings)


@pytest.fixture
def cache(temp_db_path, device_clock):
    return LocalCacheStore(temp_db_path, APP_ID, clock=device_clock)
