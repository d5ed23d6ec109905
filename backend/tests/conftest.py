"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
"""
import os
from unittest.mock import AsyncMock, patch

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token,test_user_2"
os.environ["APP_AUTH_TOKEN_USER_MAP"] = "test_user_2:usr_2"
os.environ["APP_DEFAULT_USER_ID"] = "usr_dev"
os.environ["TODOIST_ENCRYPTION_KEYS"] = "v1:" + "11" * 32
os.environ["TODOIST_ENCRYPTION_KEY_ID"] = "v1"
os.environ["TODOIST_SYNC_SECRET"] = "cron_secret"

from api.main import app, get_db


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.rpush = AsyncMock(return_value=1)
    r.incr = AsyncMock(return_value=1)
    r.expire = AsyncMock(return_value=True)
    r.ttl = AsyncMock(return_value=59)
    r.ping = AsyncMock(return_value=True)
    return r


@pytest.fixture
def keyring_env():
    """Restore the encryption settings a test changes."""
    from common.config import settings

    saved = (settings.TODOIST_ENCRYPTION_KEY, settings.TODOIST_ENCRYPTION_KEYS, settings.TODOIST_ENCRYPTION_KEY_ID)
    yield settings
    settings.TODOIST_ENCRYPTION_KEY, settings.TODOIST_ENCRYPTION_KEYS, settings.TODOIST_ENCRYPTION_KEY_ID = saved


@pytest.fixture
def api_with_db(mock_redis):
    """Yields a function that wires the app to a given session factory."""

    def _wire(session_factory):
        async def _override_get_db():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_db] = _override_get_db
        return app

    with patch("api.main.redis_client", mock_redis):
        yield _wire
    app.dependency_overrides.clear()
